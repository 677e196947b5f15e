"""Property-based tests for interval and quota merge invariants."""

from datetime import timedelta

from hypothesis import given
from hypothesis import strategies as st

from gearbook.services.intervals import clipped_hours, duration_hours, intervals_overlap
from gearbook.services.quota_policy import UNLIMITED, UNSET, LimitValue, merge_most_permissive
from tests.support import NOW

# Strategies for generating test data
limit_values = st.one_of(
    st.just(UNSET),
    st.just(UNLIMITED),
    st.integers(min_value=0, max_value=1000).map(LimitValue.limit),
)


@st.composite
def intervals(draw):
    start = draw(st.integers(min_value=0, max_value=24 * 60))
    length = draw(st.integers(min_value=1, max_value=24 * 60))
    return NOW + timedelta(minutes=start), NOW + timedelta(minutes=start + length)


@given(a=intervals(), b=intervals())
def test_overlap_is_symmetric(a, b):
    assert intervals_overlap(*a, *b) == intervals_overlap(*b, *a)


@given(a=intervals())
def test_interval_overlaps_itself(a):
    assert intervals_overlap(*a, *a)


@given(a=intervals(), window=intervals())
def test_clipped_hours_bounded_by_both_intervals(a, window):
    clipped = clipped_hours(*a, *window)

    assert 0.0 <= clipped <= duration_hours(*a) + 1e-9
    assert clipped <= duration_hours(*window) + 1e-9
    assert (clipped > 0) == intervals_overlap(*a, *window)


@given(a=limit_values, b=limit_values)
def test_merge_is_commutative(a, b):
    assert merge_most_permissive(a, b) == merge_most_permissive(b, a)


@given(a=limit_values, b=limit_values, c=limit_values)
def test_merge_is_associative(a, b, c):
    left = merge_most_permissive(merge_most_permissive(a, b), c)
    right = merge_most_permissive(a, merge_most_permissive(b, c))
    assert left == right


@given(a=limit_values, b=limit_values)
def test_merge_never_tightens(a, b):
    merged = merge_most_permissive(a, b)

    for original in (a, b):
        if original.is_limited and merged.is_limited:
            assert merged.value >= original.value
        if original == UNLIMITED:
            assert merged == UNLIMITED
