import json
import streamlit as st
import pandas as pd

from vaultsim.config import ScenarioConfig, SHOCK_KINDS
from vaultsim.engine import SimulationEngine

st.set_page_config(page_title="Pooled Vault Simulator", layout="wide")

SWEEPABLE = {
    "Shock size (share)": ("shock_size", float),
    "Lender APR drift": ("lender_apr_drift", float),
    "Withdraw probability": ("p_withdraw", float),
    "Performance fee (bps)": ("performance_fee_bps", int),
    "Management fee (bps)": ("management_fee_bps", int),
    "Max report delay (ticks)": ("max_report_delay_ticks", int),
}


def build_engine(cfg: ScenarioConfig | None = None) -> SimulationEngine:
    """(Re)build the session engine from ``cfg`` or the stored scenario."""
    cfg = cfg or st.session_state.get("cfg") or ScenarioConfig()
    st.session_state.cfg = cfg
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=int(st.session_state.get("seed", 1)))
    st.session_state.batch_results = None
    return st.session_state.engine


def scenario_with(base: ScenarioConfig, **overrides) -> ScenarioConfig:
    return ScenarioConfig(**{**base.__dict__, **overrides})


def sweep_values(text: str, cast: type) -> list:
    parsed = pd.to_numeric(pd.Series(text.split(","), dtype="string").str.strip(), errors="coerce").dropna()
    return [cast(v) for v in parsed]


def wide_chart(frame: pd.DataFrame, title: str) -> None:
    st.subheader(title)
    st.line_chart(frame, x="tick", y=[c for c in frame.columns if c != "tick"])


def money_table(frame: pd.DataFrame) -> pd.DataFrame:
    out = frame.copy()
    for col in out.select_dtypes(include="number").columns:
        out[col] = out[col].map("{:,.2f}".format)
    return out


engine = st.session_state.get("engine") or build_engine()

st.title("Pooled Vault Simulator")
st.caption("One tick is one day; amounts are whole want tokens.")

with st.sidebar:
    st.header("Run")
    st.number_input("Random seed", min_value=1, max_value=100000, value=1, key="seed")
    if st.button("Restart simulation"):
        engine = build_engine()

    ticks = st.slider("Ticks to run", min_value=1, max_value=730, value=30)
    step_col, run_col = st.columns(2)
    n_ticks = 1 if step_col.button("Step 1 tick") else int(ticks) if run_col.button("Run N ticks") else 0
    if n_ticks:
        bar = st.progress(0.0)
        for done in range(1, n_ticks + 1):
            engine.step(1)
            bar.progress(done / n_ticks)
        if engine.metrics.pool_rows[-1]["tick"] != engine.tick:
            engine.snapshot_metrics(force=True)
    st.caption(f"Current tick: {engine.tick}")

    st.header("Scenario")
    cfg = st.session_state.cfg
    shock_on = st.checkbox("Schedule shock", value=cfg.shock_tick is not None)
    shock_kind = st.selectbox("Shock kind", SHOCK_KINDS, index=SHOCK_KINDS.index(cfg.shock_kind))
    shock_tick = st.number_input("Shock tick", min_value=1, max_value=10000, value=int(cfg.shock_tick or 30))
    shock_size = st.slider("Shock size", 0.0, 1.0, float(cfg.shock_size), step=0.05)
    health_check = st.checkbox("Health check enabled", value=cfg.health_check_enabled)
    if st.button("Apply scenario and restart"):
        engine = build_engine(scenario_with(
            cfg,
            shock_tick=int(shock_tick) if shock_on else None,
            shock_kind=shock_kind,
            shock_size=float(shock_size),
            health_check_enabled=bool(health_check),
        ))

    st.header("Parameter sweep")
    label = st.selectbox("Parameter", list(SWEEPABLE))
    key, cast = SWEEPABLE[label]
    raw = st.text_input("Values (comma separated)", value=str(getattr(cfg, key)))
    seeds = st.number_input("Seeds per value", min_value=1, max_value=20, value=3)
    sweep_ticks = st.number_input("Ticks per run", min_value=1, max_value=2000, value=180)
    if st.button("Run sweep"):
        values = sweep_values(raw, cast)
        bar = st.progress(0.0)
        rows = []
        for i, (value, seed) in enumerate((v, s) for v in values for s in range(1, int(seeds) + 1)):
            run = SimulationEngine(cfg=scenario_with(cfg, **{key: value}), seed=seed)
            run.step(int(sweep_ticks))
            rows.append({"value": value, "seed": seed, **run.kpis(), "breaches": len(run.invariant_breaches)})
            bar.progress((i + 1) / (len(values) * int(seeds)))
        st.session_state.batch_results = rows

tab_pool, tab_strategies, tab_lenders, tab_events, tab_sweep = st.tabs(
    ["Pool", "Strategies", "Lenders", "Events", "Sweep"]
)
pool_df = engine.metrics.pool_df()
strat_df = engine.metrics.strategy_df()
lender_df = engine.metrics.lender_df()

with tab_pool:
    latest = pool_df.iloc[-1]
    days = max(1.0, engine.tick * engine.cfg.tick_seconds / 86_400)
    growth = float(latest["price_per_share"]) / (float(pool_df["price_per_share"].iloc[0]) or 1.0) - 1.0
    kpis = [
        ("Total assets", f"{latest['total_assets']:,.2f}"),
        ("Idle", f"{latest['total_idle']:,.2f}"),
        ("Debt", f"{latest['total_debt']:,.2f}"),
        ("Price per share", f"{latest['price_per_share']:,.6f}"),
        ("Share growth (annualised)", f"{growth * 365.0 / days:.2%}"),
        ("Locked profit", f"{latest['locked_profit']:,.2f}"),
        ("Debt ratio (bps)", str(int(latest["debt_ratio"]))),
        ("Harvests", str(int(latest["harvests_total"]))),
        ("Failed calls", str(int(latest["failures_total"]))),
        ("Shutdown", "yes" if latest["emergency_shutdown"] else "no"),
    ]
    for cols, chunk in ((st.columns(5), kpis[:5]), (st.columns(5), kpis[5:])):
        for col, (name, value) in zip(cols, chunk):
            col.metric(name, value)
    if engine.invariant_breaches:
        st.error(f"{len(engine.invariant_breaches)} invariant breaches, last: {engine.invariant_breaches[-1]}")

    st.subheader("Idle vs debt")
    st.line_chart(pool_df, x="tick", y=["total_assets", "total_idle", "total_debt"])
    st.subheader("Price per share")
    st.line_chart(pool_df, x="tick", y=["price_per_share"])
    st.subheader("Depositor flows")
    st.line_chart(pool_df, x="tick", y=["deposited_tick", "withdrawn_tick"])
    st.subheader("Keeper calls")
    st.line_chart(pool_df, x="tick", y=["harvests_tick", "tends_tick"])

with tab_strategies:
    if strat_df.empty:
        st.info("No strategies reporting yet.")
    else:
        now = strat_df[strat_df["tick"] == strat_df["tick"].max()].drop(columns=["tick"])
        st.dataframe(money_table(now), use_container_width=True)
        wide_chart(engine.metrics.pivot_strategies("total_debt"), "Debt per strategy")
        wide_chart(engine.metrics.pivot_strategies("estimated_assets"), "Estimated assets per strategy")
        wide_chart(engine.metrics.pivot_strategies("total_gain"), "Cumulative gain")
        wide_chart(engine.metrics.pivot_strategies("total_loss"), "Cumulative loss")

with tab_lenders:
    if lender_df.empty:
        st.info("No lenders in this world.")
    else:
        now = lender_df[lender_df["tick"] == lender_df["tick"].max()].drop(columns=["tick"])
        st.dataframe(money_table(now.sort_values("apr", ascending=False)), use_container_width=True)
        for value, title in (("nav", "Lender NAV"), ("apr", "Lender APR")):
            frame = lender_df.pivot_table(index="tick", columns="lender", values=value, aggfunc="last")
            wide_chart(frame.reset_index(), title)

with tab_events:
    events = engine.log.tail(300)
    if events:
        log_df = pd.DataFrame([e.__dict__ for e in reversed(events)])
        log_df["meta"] = log_df["meta"].map(lambda m: json.dumps(m, sort_keys=True, default=str) if m else "")
        st.dataframe(log_df, use_container_width=True)
    if engine.failures:
        st.subheader("Failed calls")
        st.dataframe(pd.Series(engine.failures, name="count").sort_index(), use_container_width=True)

with tab_sweep:
    rows = st.session_state.get("batch_results")
    if not rows:
        st.info("Run a sweep from the sidebar.")
    else:
        sweep_df = pd.DataFrame(rows)
        st.dataframe(sweep_df, use_container_width=True)
        st.subheader("Mean price per share by value")
        st.line_chart(sweep_df.groupby("value")[["price_per_share"]].mean().reset_index(), x="value", y=["price_per_share"])
