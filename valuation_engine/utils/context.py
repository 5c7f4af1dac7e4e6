# valuation_engine/utils/context.py
"""
Pass context management for the valuation engine.

Each aggregation pass gets a short pass id so that every log line written
while the pass runs (including lines from worker threads of its fan-out)
can be traced back to it.

Uses Python's contextvars. Worker threads do not inherit the caller's
context automatically, so the fan-out copies it with
`contextvars.copy_context()` before submitting work.

Usage:
    from valuation_engine.utils.context import new_pass_id, get_pass_id

    token = new_pass_id()
    ...
    get_pass_id()  # e.g. "p-3f9c21"
"""

import uuid
from contextvars import ContextVar, Token

# =============================================================================
# CONTEXT VARIABLES
# =============================================================================

_pass_id_var: ContextVar[str | None] = ContextVar("pass_id", default=None)


# =============================================================================
# PASS ID
# =============================================================================

def get_pass_id() -> str | None:
    """
    Get the current aggregation pass id.

    Returns:
        The pass id, or None outside of a pass.
    """
    return _pass_id_var.get()


def set_pass_id(pass_id: str) -> Token:
    """
    Set the pass id for the current context.

    Args:
        pass_id: Identifier for this pass

    Returns:
        Token that restores the previous value via `reset_pass_id`
    """
    return _pass_id_var.set(pass_id)


def new_pass_id() -> Token:
    """Generate and set a fresh pass id."""
    return set_pass_id(f"p-{uuid.uuid4().hex[:6]}")


def reset_pass_id(token: Token) -> None:
    """Restore the pass id that was active before `set_pass_id`."""
    _pass_id_var.reset(token)
