from enum import Enum


class OrchestratorState(str, Enum):
    GATHER_CONTEXT = "gather_context"
    CALL_MODEL = "call_model"
    TOOL_REQUESTED = "tool_requested"
    EXECUTE_TOOL = "execute_tool"
    FINAL_TEXT = "final_text"
    DISPATCH = "dispatch"
    DONE = "done"
    FAILURE = "failure"
    FALLBACK_REPLY = "fallback_reply"


TERMINAL_STATES = {OrchestratorState.DONE}

VALID_TRANSITIONS = {
    OrchestratorState.GATHER_CONTEXT: [OrchestratorState.CALL_MODEL],
    OrchestratorState.CALL_MODEL: [OrchestratorState.TOOL_REQUESTED, OrchestratorState.FINAL_TEXT],
    # a rejected call goes straight back to the model; the iteration bound forces FINAL_TEXT
    OrchestratorState.TOOL_REQUESTED: [
        OrchestratorState.EXECUTE_TOOL,
        OrchestratorState.TOOL_REQUESTED,
        OrchestratorState.CALL_MODEL,
        OrchestratorState.FINAL_TEXT,
    ],
    OrchestratorState.EXECUTE_TOOL: [
        OrchestratorState.TOOL_REQUESTED,
        OrchestratorState.CALL_MODEL,
        OrchestratorState.FINAL_TEXT,
    ],
    OrchestratorState.FINAL_TEXT: [OrchestratorState.DISPATCH, OrchestratorState.DONE],
    OrchestratorState.DISPATCH: [OrchestratorState.DONE],
    OrchestratorState.FAILURE: [OrchestratorState.FALLBACK_REPLY],
    OrchestratorState.FALLBACK_REPLY: [OrchestratorState.DISPATCH, OrchestratorState.DONE],
    OrchestratorState.DONE: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: OrchestratorState, to_state: OrchestratorState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: OrchestratorState, to_state: OrchestratorState) -> bool:
    """Check if transition is valid. FAILURE is reachable from any non-terminal state."""
    if to_state == OrchestratorState.FAILURE:
        return from_state not in TERMINAL_STATES and from_state != OrchestratorState.FAILURE
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: OrchestratorState, to_state: OrchestratorState) -> OrchestratorState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


class StateTracker:
    """Current orchestrator state plus the trail of visited states."""

    def __init__(self, initial: OrchestratorState = OrchestratorState.GATHER_CONTEXT):
        self.state = initial
        self.trail = [initial]

    def advance(self, to_state: OrchestratorState) -> OrchestratorState:
        self.state = transition(self.state, to_state)
        self.trail.append(self.state)
        return self.state

    def fail(self) -> OrchestratorState:
        return self.advance(OrchestratorState.FAILURE)

    @property
    def is_done(self) -> bool:
        return self.state in TERMINAL_STATES
