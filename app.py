"""
CyberGua – deterministic divination console (streamlit).

- Every run writes one hash-chained trace; chain, group and root digests are verifiable in place
- Per-install universe model evolves after each run and on likes
- Run capsules replay byte-identically; determinism self-test runs the same inputs twice
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from cybergua.almanac import almanac_fields
from cybergua.bits import hex8, mix32
from cybergua.capsule import build_run_capsule, determinism_self_test, replay_capsule
from cybergua.config import (
    DEFAULT_WEIGHTS_DICT,
    WEIGHT_KEYS,
    ConfigError,
    DimensionWeights,
    Extras,
    Observation,
    build_weights,
)
from cybergua.engine import DivinationInput, divine_with_trace
from cybergua.formula import build_formula_data
from cybergua.library import (
    ModelLibrary,
    add_item,
    build_library,
    delete_item,
    ensure_library,
    make_item,
    rename_item,
    set_active,
    update_active,
)
from cybergua.model import (
    HistoryRecord,
    UniverseModel,
    apply_like,
    build_model,
    dashboard_metrics,
    derive_formula_seed,
    effective_theta16,
    evolve_model,
    features16,
    init_model,
    observation_from_signals,
    snapshot,
)
from cybergua.presentation import (
    COMPUTING,
    RESULT,
    almanac_lines,
    formula_markdown,
    phase_terms,
    progressive_params,
    result_markdown,
    science_markdown,
    stream_lines,
)
from cybergua.tables import factor_frame, integrity_frame, params_frame, phase_summary, trace_frame
from cybergua.trace import verify_integrity

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("cybergua.app")

HISTORY_LIMIT = 200
PRIOR_WINDOW = 40

WEIGHT_LABELS = {
    "time": "时间 (pillars)",
    "text": "文字 (question text)",
    "iching": "易经 (hexagram)",
    "numerology": "数理 (numerology)",
    "entropy": "天机 (entropy)",
}


def host_observation() -> Observation:
    offset = datetime.now().astimezone().utcoffset()
    tz_hours = offset.total_seconds() / 3600 if offset is not None else 0.0
    return observation_from_signals(
        tz_hours=tz_hours,
        hardware_concurrency=os.cpu_count() or 4,
        language=os.environ.get("LANG", "unknown"),
    )


def run_divination(model: UniverseModel, history: List[HistoryRecord], inp: DivinationInput,
                   weights: DimensionWeights) -> Dict[str, Any]:
    entropy = secrets.randbits(32)
    obs = host_observation()
    theta = effective_theta16(model, history[:PRIOR_WINDOW])
    extras = Extras(obs=obs, model=snapshot(model, theta))

    run = divine_with_trace(inp, entropy, weights, extras)
    formula_seed = derive_formula_seed(entropy, model, obs.hash)
    phases = phase_terms(run.trace)
    formula = build_formula_data(formula_seed, phases, model.policy)
    feats = features16(run.trace, obs.fp8)

    hid = hex8(mix32(run.result.carry.seed, formula_seed))
    capsule = build_run_capsule(hid, inp, entropy, run, extras, formula=formula, formula_seed=formula_seed,
                                policy=model.policy, phases=phases, features16=feats, weights=weights)
    record = HistoryRecord(score=run.result.score, omega=formula.omega, features16=tuple(feats),
                           signature=run.result.signature, root=run.root_digest or "")
    logger.info("run hid=%s score=%d omega=%s events=%d", hid, run.result.score, formula.omega, len(run.trace))
    return {"hid": hid, "inp": inp, "entropy": entropy, "extras": extras, "run": run,
            "formula": formula, "features16": feats, "capsule": capsule, "record": record}


# =============================================================================
# Streamlit UI
# =============================================================================

st.set_page_config(page_title="CyberGua – Deterministic Divination", layout="wide")


def init_session() -> None:
    if "library" not in st.session_state:
        st.session_state.library = ensure_library()
        st.session_state.history = []
        st.session_state.last = None
        st.session_state.det_check_last = None
        st.session_state.feedback_locked = False


def set_model(new_model: UniverseModel) -> None:
    st.session_state.library = update_active(st.session_state.library, new_model)


def switch_library(new_library: ModelLibrary) -> None:
    st.session_state.library = new_library
    st.session_state.history = []
    st.session_state.last = None
    st.session_state.feedback_locked = False


init_session()
library: ModelLibrary = st.session_state.library  # type: ignore[assignment]
model: UniverseModel = library.active.model
history: List[HistoryRecord] = st.session_state.history  # type: ignore[assignment]
last: Optional[Dict[str, Any]] = st.session_state.last

st.sidebar.header("CyberGua Configuration")

st.sidebar.markdown("#### Dimension weights")
weights_cfg = {k: st.sidebar.slider(WEIGHT_LABELS[k], 0.0, 1.0, float(DEFAULT_WEIGHTS_DICT[k]), 0.01)
               for k in WEIGHT_KEYS}
try:
    weights = build_weights(weights_cfg)
except ConfigError as e:
    st.sidebar.error(f"Invalid weights: {e}")
    st.stop()

st.sidebar.markdown("#### Universe model")
names = {item.id: item.name for item in library.items}
picked = st.sidebar.selectbox("Active model", list(names), index=list(names).index(library.active_id),
                              format_func=lambda i: names[i])
if picked != library.active_id:
    switch_library(set_active(library, picked))
    st.rerun()

dash = dashboard_metrics(model, history)
m1, m2 = st.sidebar.columns(2)
m1.metric("Runs", dash.run_count)
m2.metric("Likes ratio", f"{dash.likes_ratio01:.0%}")
m1.metric("Score mean", f"{dash.score_mean:.1f}", help=f"std {dash.score_std:.1f} over {dash.recent} runs")
m2.metric("Ω finite", f"{dash.omega_finite_ratio01:.0%}")
m1.metric("Feedback bias", f"{dash.feedback_bias:+.2f}", help=f"{dash.liked} liked / {dash.disliked} disliked")
m2.metric("θ stability", f"{dash.theta_stability01:.3f}")
st.sidebar.progress(dash.progress01, text=f"salt {hex8(model.salt)} · signature {dash.recent_signature}")

with st.sidebar.expander("Formula policy", expanded=False):
    st.code(json.dumps(model.policy.to_dict(), indent=2), language="json")
    st.code(json.dumps([round(x, 4) for x in model.theta16]), language="json")

with st.sidebar.expander("Model library", expanded=False):
    new_name = st.text_input("Name", value=library.active.name, key=f"rename_{library.active_id}")
    if new_name.strip() != library.active.name and st.button("Rename"):
        st.session_state.library = rename_item(library, library.active_id, new_name)
        st.rerun()
    if st.button("New model"):
        switch_library(add_item(library, make_item(init_model(), f"模型 {len(library.items) + 1}"), make_active=True))
        st.rerun()
    if st.button("Delete active model", disabled=len(library.items) <= 1):
        switch_library(delete_item(library, library.active_id))
        st.rerun()
    if st.button("Reset active model"):
        set_model(init_model())
        switch_library(st.session_state.library)
        st.rerun()

    st.download_button("Download active model",
                       data=json.dumps(model.to_dict(), indent=2, sort_keys=True),
                       file_name="cybergua_universe_model.json",
                       mime="application/json")
    st.download_button("Download model library",
                       data=json.dumps(library.to_dict(), indent=2, sort_keys=True, ensure_ascii=False),
                       file_name="cybergua_model_library.json",
                       mime="application/json")
    uploaded_model = st.file_uploader("Import model or library JSON", type=["json"], key="model_upload")
    if uploaded_model is not None and st.button("Import"):
        try:
            raw = json.loads(uploaded_model.read().decode("utf-8"))
            if isinstance(raw, dict) and "items" in raw:
                switch_library(build_library(raw))
            else:
                switch_library(add_item(library, make_item(build_model(raw), uploaded_model.name), make_active=True))
            st.rerun()
        except ValueError as e:
            st.error(f"Failed to import: {e}")

st.sidebar.markdown("---")

if st.sidebar.button("Verify trace integrity"):
    if last is None:
        st.sidebar.info("Run a divination first.")
    else:
        integrity = verify_integrity(last["run"].trace)
        if integrity["chain_ok"] and integrity["groups_ok"] and integrity["root_ok"]:
            st.sidebar.success("Chain, group digests and root digest verified OK.")
        else:
            st.sidebar.error(f"Chain OK={integrity['chain_ok']} (bad idx={integrity['chain_first_bad_index']}), "
                             f"Groups OK={integrity['groups_ok']} (bad idx={integrity['group_first_bad_index']}), "
                             f"Root OK={integrity['root_ok']}.")

cap_exp = st.sidebar.expander("Run Capsule", expanded=False)
with cap_exp:
    if last is not None:
        st.download_button(f"Download cybergua_{last['hid']}.json",
                           data=json.dumps(last["capsule"], indent=2, sort_keys=True, ensure_ascii=False),
                           file_name=f"cybergua_{last['hid']}.json",
                           mime="application/json")
    uploaded = st.file_uploader("Replay run capsule JSON", type=["json"], key="capsule_upload")
    if uploaded is not None:
        try:
            res = replay_capsule(json.loads(uploaded.read().decode("utf-8")))
            if res.ok:
                st.success("Capsule replayed identically.")
            else:
                st.error("Capsule replay diverged.")
                st.code(json.dumps(res.mismatch, indent=2, ensure_ascii=False), language="json")
        except ValueError as e:
            st.error(f"Failed to replay capsule: {e}")

st.title("CyberGua – Deterministic Divination Engine")
st.caption("Hash-chained trace • Universe model evolution • Replayable run capsules")

question = st.text_area("所问之事 (question)", height=90, placeholder="Example: 这次项目上线顺利吗？")
d1, d2, d3 = st.columns([1, 1, 2])
with d1:
    day = st.date_input("Date", value=datetime.now().date())
with d2:
    tod = st.time_input("Time", value=datetime.now().time().replace(microsecond=0))
with d3:
    nickname = st.text_input("Nickname (optional)", value="")
when = datetime.combine(day, tod)

feedback_locked = bool(st.session_state.feedback_locked)
c1, c2, c3, c4, c5 = st.columns([1, 1, 1, 1, 4])
with c1:
    run_btn = st.button("起卦 Divine")
with c2:
    det_test = st.button("Determinism Self-Test")
with c3:
    like_btn = st.button("👍 Like", disabled=last is None or feedback_locked)
with c4:
    dislike_btn = st.button("👎 Dislike", disabled=last is None or feedback_locked)
with c5:
    if feedback_locked and history:
        st.caption("Feedback recorded: " + ("liked" if history[0].feedback == 1 else "disliked"))

inp = DivinationInput(question=question.strip(), when=when, nickname=nickname.strip() or None)

if det_test:
    if not question.strip():
        st.warning("Enter a question first.")
    else:
        theta = effective_theta16(model, history[:PRIOR_WINDOW])
        res = determinism_self_test(inp, secrets.randbits(32), weights,
                                    Extras(obs=host_observation(), model=snapshot(model, theta)))
        st.session_state.det_check_last = asdict(res)
        if res.ok:
            st.success("Determinism self-test passed.")
        else:
            st.error("Determinism self-test FAILED.")
            st.code(json.dumps(res.mismatch, indent=2), language="json")

if run_btn:
    if not question.strip():
        st.warning("Enter a question first.")
    else:
        result_run = run_divination(model, history, inp, weights)
        set_model(evolve_model(model, result_run["record"], history))
        history.insert(0, result_run["record"])
        del history[HISTORY_LIMIT:]
        st.session_state.last = result_run
        st.session_state.feedback_locked = False
        st.rerun()

# One piece of feedback per run.
if (like_btn or dislike_btn) and last is not None and history and not st.session_state.feedback_locked:
    if like_btn:
        set_model(apply_like(model, last["features16"]))
        history[0] = replace(history[0], feedback=1)
    else:
        history[0] = replace(history[0], feedback=-1)
    st.session_state.feedback_locked = True
    st.rerun()

if last is None:
    st.info("Ask a question and press Divine to run the engine.")
    st.stop()

run = last["run"]
formula = last["formula"]
result = run.result
carry = result.carry
trace = run.trace

mcols = st.columns(6)
mcols[0].metric("Score", result.score)
mcols[1].metric("Signature", result.signature)
mcols[2].metric("Hexagram", f"{carry.hexagram.name} ({carry.hexagram.changing_line})")
mcols[3].metric("Pillars", carry.pillars.joined())
mcols[4].metric("Events", len(trace))
mcols[5].metric("Root digest", run.root_digest or "n/a")

st.markdown("---")
left, right = st.columns([1.2, 1.3])

with left:
    st.subheader("Formula")
    visible = st.slider("Reveal progress (events)", 0, len(trace), len(trace))
    phase = RESULT if visible >= len(trace) else COMPUTING
    st.markdown(formula_markdown(formula, visible, len(trace), phase))
    if phase == RESULT:
        st.markdown(result_markdown(formula))
    shown = progressive_params(formula.params, phase, visible, len(trace))
    st.dataframe(params_frame(replace(formula, params=tuple(shown))), use_container_width=True, height=300)

    st.markdown("**Almanac**")
    st.markdown(stream_lines(almanac_lines(almanac_fields(last["inp"].when)), visible, len(trace), phase))

with right:
    st.subheader("Trace")
    integrity = verify_integrity(trace)
    st.write(f"Chain OK: **{integrity['chain_ok']}** | Groups OK: **{integrity['groups_ok']}** | "
             f"Root OK: **{integrity['root_ok']}**")

    st.markdown("**Phases**")
    st.dataframe(phase_summary(trace), use_container_width=True, height=240)

    st.markdown("**Factors**")
    st.dataframe(factor_frame(trace), use_container_width=True, height=320)

    st.markdown("**Chain tail**")
    st.dataframe(integrity_frame(trace), use_container_width=True, height=260)

with st.expander("Full trace", expanded=False):
    st.dataframe(trace_frame(trace), use_container_width=True, height=420)
with st.expander("Trace narrative", expanded=False):
    st.markdown(science_markdown(trace[:visible] if phase == COMPUTING else trace))
with st.expander("Run history", expanded=False):
    st.dataframe(pd.DataFrame([{"score": h.score, "omega": h.omega, "feedback": h.feedback,
                                "signature": h.signature, "root": h.root} for h in history]),
                 use_container_width=True)
