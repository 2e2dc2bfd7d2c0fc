"""Tests for the run state machine and run context."""

import pytest

from achilles.context import TERMINAL_STATES, VALID_TRANSITIONS, RunState
from achilles.errors import InvalidTransitionError, StepFailure

FULL_RUN = [
    RunState.ANALYSES_RUNNING,
    RunState.ANALYSES_MERGED,
    RunState.HEEL_A_RUNNING,
    RunState.HEEL_A_MERGED,
    RunState.HEEL_B_RUNNING,
    RunState.CLEANUP,
    RunState.DONE,
]


def test_full_run_path(make_ctx):
    ctx = make_ctx()
    for state in FULL_RUN:
        ctx.transition(state)
    assert ctx.history == [RunState.INIT] + FULL_RUN


def test_heel_only_path(make_ctx):
    ctx = make_ctx()
    ctx.transition(RunState.HEEL_A_RUNNING)
    ctx.transition(RunState.CLEANUP)
    ctx.transition(RunState.FAILED)
    assert ctx.state is RunState.FAILED


@pytest.mark.parametrize(
    "path",
    [
        [RunState.HEEL_B_RUNNING],
        [RunState.ANALYSES_RUNNING, RunState.HEEL_A_RUNNING],
        [RunState.CLEANUP, RunState.ANALYSES_RUNNING],
        [RunState.DONE],
    ],
)
def test_out_of_order_transitions_rejected(make_ctx, path):
    ctx = make_ctx()
    with pytest.raises(InvalidTransitionError):
        for state in path:
            ctx.transition(state)


def test_terminal_states_have_no_exits():
    for state in TERMINAL_STATES:
        assert VALID_TRANSITIONS[state] == set()


def test_every_running_state_can_reach_cleanup():
    for state, targets in VALID_TRANSITIONS.items():
        if state not in TERMINAL_STATES and state is not RunState.CLEANUP:
            assert RunState.CLEANUP in targets, state


def test_failed_reflects_failures_and_cancellation(make_ctx):
    ctx = make_ctx()
    assert not ctx.failed
    ctx.record_failures([StepFailure("analysis", "1", "boom")])
    assert ctx.failed

    other = make_ctx()
    other.token.cancel()
    assert other.failed


def test_scratch_registry_is_ordered_and_unique(make_ctx):
    ctx = make_ctx()
    for name in ["a", "b", "a", "c"]:
        ctx.register_scratch(name)
    ctx.forget_scratch("b")
    ctx.forget_scratch("missing")
    assert ctx.scratch_tables == ["a", "c"]


def test_log_respects_verbose(make_ctx, capsys):
    make_ctx(verbose=False).log("quiet")
    make_ctx(verbose=True).log("loud")
    out = capsys.readouterr().out
    assert "quiet" not in out
    assert "[ACHILLES] loud" in out
