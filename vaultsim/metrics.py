from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Any, List
import pandas as pd

@dataclass
class MetricsStore:
    pool_rows: List[Dict[str, Any]] = field(default_factory=list)
    strategy_rows: List[Dict[str, Any]] = field(default_factory=list)
    lender_rows: List[Dict[str, Any]] = field(default_factory=list)

    def add_pool(self, row: Dict[str, Any]) -> None:
        self.pool_rows.append(row)

    def add_strategy_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.strategy_rows.extend(rows)

    def add_lender_rows(self, rows: List[Dict[str, Any]]) -> None:
        self.lender_rows.extend(rows)

    def pool_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.pool_rows)

    def strategy_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.strategy_rows)

    def lender_df(self) -> pd.DataFrame:
        return pd.DataFrame(self.lender_rows)

    def pivot_strategies(self, value: str) -> pd.DataFrame:
        """Wide frame: one column per strategy for ``value``, indexed by tick."""
        df = self.strategy_df()
        if df.empty:
            return df
        return df.pivot_table(index="tick", columns="strategy", values=value, aggfunc="last").reset_index()
