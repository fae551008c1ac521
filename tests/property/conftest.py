"""Hypothesis strategies for property-based testing."""

from hypothesis import strategies as st

from cinesum.models.pipeline import STAGE_ORDER

progress_values = st.one_of(
    st.floats(min_value=-50.0, max_value=250.0, allow_nan=False),
    st.sampled_from([0.0, 99.0, 99.9, 100.0, float("nan"), float("inf")]),
)


@st.composite
def generate_stage_scripts(draw):
    """Generate per-stage progress scripts and the index of a failing stage (or None)."""
    steps = {
        stage: draw(st.lists(progress_values, max_size=8)) for stage in STAGE_ORDER
    }
    fail_at = draw(st.one_of(st.none(), st.integers(min_value=0, max_value=len(STAGE_ORDER) - 1)))
    return steps, fail_at


media_inputs = st.text(
    alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_./",
    min_size=1,
    max_size=40,
).filter(lambda s: s.strip())
