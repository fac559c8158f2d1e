import json
import time
import streamlit as st
import pandas as pd

from poolsim.config import DAY, ScenarioConfig
from poolsim.core import from_units
from poolsim.engine import SimulationEngine
from poolsim.metrics import events_df, receipts_df

st.set_page_config(page_title="Omnipool Allocation Simulator", layout="wide")

def get_engine() -> SimulationEngine:
    if "engine" not in st.session_state:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
        st.session_state.seed = 1
        st.session_state.engine = SimulationEngine(cfg=cfg, seed=st.session_state.seed)
    return st.session_state.engine

def reset_engine(reset_config: bool = False) -> None:
    if reset_config:
        cfg = ScenarioConfig()
        st.session_state.cfg = cfg
    else:
        cfg = st.session_state.get("cfg", ScenarioConfig())
    seed = st.session_state.get("seed", 1)
    st.session_state.engine = SimulationEngine(cfg=cfg, seed=seed)

engine = get_engine()

st.title("Omnipool Allocation Simulator")
st.caption("Time model: 1 tick = 1 day by default. Amounts are shown in whole tokens.")

def _fmt_duration(seconds: float) -> str:
    if seconds < 0:
        seconds = 0.0
    mins = int(seconds // 60)
    secs = seconds - (mins * 60)
    return f"{mins}m {secs:0.1f}s"

def _fmt(value: float) -> str:
    return f"{float(value):,.2f}"

def _render_kpi_grid(kpis, columns: int = 5) -> None:
    for idx in range(0, len(kpis), columns):
        row = kpis[idx: idx + columns]
        cols = st.columns(columns)
        for col, (label, value) in zip(cols, row):
            col.metric(label, value)

def _format_event_meta(meta) -> str:
    if meta is None:
        return ""
    if isinstance(meta, str):
        return meta
    try:
        return json.dumps(meta, sort_keys=True)
    except TypeError:
        return str(meta)

def _run_ticks(engine: SimulationEngine, n_ticks: int, progress_bar) -> None:
    started = time.time()
    for done in range(1, n_ticks + 1):
        engine.step(1)
        if n_ticks > 1:
            progress_bar.progress(done / n_ticks, text=f"Ticks run: {done}/{n_ticks}")
    label = f"Ran {n_ticks} tick(s) in {_fmt_duration(time.time() - started)}"
    st.session_state.run_progress = 1.0
    st.session_state.run_progress_label = label
    progress_bar.progress(1.0, text=label)

with st.sidebar:
    st.header("Sim Controls")

    st.subheader("Run")
    if st.button("Restart simulation"):
        reset_engine(reset_config=True)
        engine = st.session_state.engine
        st.session_state.run_progress = 0.0
        st.session_state.run_progress_label = "Idle"
    st.caption("Restart resets the simulation to tick 0 with default settings.")
    if "seed" not in st.session_state:
        st.session_state.seed = 1
    st.number_input("Random seed", min_value=1, max_value=100000, key="seed")

    run_ticks = st.slider("Ticks to run", min_value=1, max_value=730, value=30)
    c1, c2 = st.columns(2)
    run_one = c1.button("Step 1 tick")
    run_many = c2.button("Run N ticks")
    progress_label = st.session_state.get("run_progress_label", "Idle")
    progress_value = float(st.session_state.get("run_progress", 0.0))
    progress_bar = st.progress(progress_value, text=progress_label)
    if run_one or run_many:
        _run_ticks(engine, 1 if run_one else int(run_ticks), progress_bar)
    st.caption(f"Current tick: {engine.tick} (day {engine.controller.clock.now / DAY:,.0f})")

    st.subheader("Agents")
    engine.cfg.p_deposit = st.slider("Deposit probability", 0.0, 1.0, float(engine.cfg.p_deposit), 0.01)
    engine.cfg.p_withdraw = st.slider("Withdraw probability", 0.0, 1.0, float(engine.cfg.p_withdraw), 0.01)
    engine.cfg.p_claim = st.slider("Claim probability", 0.0, 1.0, float(engine.cfg.p_claim), 0.01)
    engine.cfg.p_lock = st.slider("Lock probability", 0.0, 1.0, float(engine.cfg.p_lock), 0.01)
    engine.cfg.deposit_mean = st.number_input("Mean deposit", min_value=1.0, value=float(engine.cfg.deposit_mean))

    st.subheader("Governance")
    engine.cfg.weight_update_every_ticks = int(st.number_input(
        "Weight update every N ticks", min_value=0, value=int(engine.cfg.weight_update_every_ticks),
        help="0 disables governance weight drift.",
    ))
    engine.cfg.weight_drift = st.slider("Weight drift", 0.0, 1.0, float(engine.cfg.weight_drift), 0.01)

    st.subheader("Depeg shock")
    st.caption("Takes effect on the next restart.")
    depeg_on = st.checkbox("Schedule a depeg", value=st.session_state.cfg.depeg_tick is not None)
    if depeg_on:
        st.session_state.cfg.depeg_tick = int(st.number_input(
            "Depeg tick", min_value=1, value=int(st.session_state.cfg.depeg_tick or 30)))
        st.session_state.cfg.depeg_size = st.slider(
            "Depeg size", 0.0, 0.5, float(st.session_state.cfg.depeg_size), 0.01)
    else:
        st.session_state.cfg.depeg_tick = None
    if st.button("Apply and restart"):
        reset_engine(reset_config=False)
        engine = st.session_state.engine

tab_protocol, tab_pools, tab_venues, tab_rewards, tab_events = st.tabs(
    ["Protocol Overview", "Pools", "Venues", "Rewards & Locks", "Events"]
)

with tab_protocol:
    proto = engine.metrics.protocol_df()
    c = engine.controller
    st.subheader("Protocol KPIs")
    _render_kpi_grid([
        ("Total value (USD)", _fmt(from_units(c.inflation.total_usd()))),
        ("GOV minted", _fmt(from_units(c.inflation.total_minted()))),
        ("Rebalancing rewards", _fmt(from_units(c.inflation.rebalancing_minted))),
        ("GOV locked", _fmt(from_units(c.locker.total_locked))),
        ("Inflation / day", _fmt(from_units(c.inflation.current_inflation_rate() * DAY))),
    ])
    if not proto.empty:
        st.subheader("Value and emissions")
        st.line_chart(proto.set_index("tick")[["total_usd"]])
        st.line_chart(proto.set_index("tick")[["gov_minted", "rebalancing_minted", "gov_locked"]])
        st.subheader("Operations per tick")
        st.line_chart(proto.set_index("tick")[["ops_executed", "ops_failed", "deposits", "withdrawals"]])

with tab_pools:
    pools_df = engine.metrics.pool_df()
    if pools_df.empty:
        st.info("No pool metrics yet.")
    else:
        pool_ids = sorted(pools_df["pool_id"].unique())
        pid = st.selectbox("Pool", pool_ids)
        pool = engine.pools[pid]
        _render_kpi_grid([
            ("Underlying", pool.underlying),
            ("Total value", _fmt(from_units(pool.total_value()))),
            ("Idle", _fmt(from_units(pool.idle()))),
            ("Deviation", f"{from_units(pool.deviation_ratio()):.2%}"),
            ("Rebalancing rewards", "on" if pool.rebalancing_active else "off"),
        ])
        one = pools_df[pools_df["pool_id"] == pid].set_index("tick")
        st.line_chart(one[["total_value", "allocated", "idle"]])
        st.line_chart(one[["deviation_ratio"]])
        st.line_chart(one[["exchange_rate"]])
        st.subheader("Latest snapshot, all pools")
        latest = pools_df[pools_df["tick"] == pools_df["tick"].max()]
        st.dataframe(latest.set_index("pool_id"), use_container_width=True)

with tab_venues:
    venues = engine.metrics.venue_df()
    if venues.empty:
        st.info("No venue metrics yet.")
    else:
        pid = st.selectbox("Pool", sorted(venues["pool_id"].unique()), key="venue_pool")
        one = venues[venues["pool_id"] == pid]
        st.subheader("Actual allocation share by venue")
        st.line_chart(one.pivot(index="tick", columns="venue_id", values="actual_weight"))
        st.subheader("Target weight by venue")
        st.line_chart(one.pivot(index="tick", columns="venue_id", values="target_weight"))
        st.subheader("LP virtual price")
        st.line_chart(one.pivot(index="tick", columns="venue_id", values="virtual_price"))

with tab_rewards:
    c = engine.controller
    gov, yld = c.cfg.gov_token, c.cfg.yield_token
    rows = []
    for agent_id in sorted(engine.agents):
        row = {"agent": agent_id, "locked": from_units(c.locker.locked_balance(agent_id)),
               "lock_weight": from_units(c.locker.boosted_balance(agent_id))}
        for pid, pool in engine.pools.items():
            row[f"{pid}:staked"] = from_units(c.staker.staked_of(agent_id, pid))
            row[f"{pid}:boost"] = from_units(c.staker.boost_of(agent_id, pid))
            pending = pool.rewards.claimable(agent_id)
            row[f"{pid}:{gov}"] = from_units(pending[gov])
            row[f"{pid}:{yld}"] = from_units(pending[yld])
        row[f"wallet:{gov}"] = from_units(c.wallet(agent_id).get(gov))
        rows.append(row)
    st.subheader("Agents")
    st.dataframe(pd.DataFrame(rows).set_index("agent"), use_container_width=True)

with tab_events:
    n_events = st.slider("Events to show", 10, 2000, 200)
    ev = events_df(engine.log.tail(n_events))
    if not ev.empty:
        types = sorted(ev["event_type"].unique())
        picked = st.multiselect("Event types", types, default=types)
        st.dataframe(ev[ev["event_type"].isin(picked)], use_container_width=True)
    receipts = [r for p in engine.pools.values() for r in p.receipts.tail(n_events)]
    if receipts:
        st.subheader("Pool receipts")
        st.dataframe(receipts_df(receipts).sort_values("tick"), use_container_width=True)
    with st.expander("Raw event metadata"):
        for e in engine.log.tail(20):
            st.text(f"[{e.tick}] {e.event_type} {_format_event_meta(e.meta)}")
