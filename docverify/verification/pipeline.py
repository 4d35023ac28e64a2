"""
Resolve/verify pipeline.

Flow:
1. resolve: normalize the raw payload into (identifier, secret)
2. verify: call the verification service

Unlock and retry enter at `verify` with the input the session already
holds, so the identifier is never re-resolved.
"""

import logging
from typing import Literal, Optional

from langgraph.graph import StateGraph, START, END

from docverify.models.schemas import ResolvedInput
from docverify.verification.normalizer import normalize
from docverify.verification.state import VerificationState

logger = logging.getLogger(__name__)


# =============================================================================
# Pipeline Nodes
# =============================================================================

async def node_resolve(state: VerificationState) -> VerificationState:
    """Step 1: Normalize whatever the channel captured."""
    resolved = normalize(state.get("raw_payload"), state.get("fallback_secret"))

    if resolved is None:
        logger.info("Nothing to resolve: blank payload")
        return {**state, "resolved": None, "errors": ["blank payload"]}

    return {**state, "resolved": resolved}


async def node_verify(state: VerificationState) -> VerificationState:
    """Step 2: Ask the verification service."""
    resolved: ResolvedInput = state["resolved"]
    client = state["client"]

    outcome = await client.verify(resolved.identifier, resolved.secret)

    return {**state, "outcome": outcome}


def route_entry(state: VerificationState) -> Literal["resolve", "verify"]:
    """Skip resolution when the session already holds the input."""
    if state.get("resolved") is not None:
        return "verify"
    return "resolve"


def route_after_resolve(state: VerificationState) -> Literal["verify", "__end__"]:
    if state.get("resolved") is None:
        return END
    return "verify"


# =============================================================================
# Build Graph
# =============================================================================

def build_verification_graph() -> StateGraph:
    """
    (entry) ─┬─> resolve ─┬─> verify ─> END
             │            └─> END  (blank payload)
             └─> verify   (unlock / retry)
    """
    workflow = StateGraph(VerificationState)

    workflow.add_node("resolve", node_resolve)
    workflow.add_node("verify", node_verify)

    workflow.add_conditional_edges(
        START,
        route_entry,
        {"resolve": "resolve", "verify": "verify"},
    )
    workflow.add_conditional_edges(
        "resolve",
        route_after_resolve,
        {"verify": "verify", END: END},
    )
    workflow.add_edge("verify", END)

    return workflow.compile()


# Compiled graph
verification_graph = build_verification_graph()


# =============================================================================
# Convenience Functions
# =============================================================================

async def verify_payload(
    raw_payload: str,
    client,
    fallback_secret: Optional[str] = None,
):
    """
    One-shot resolve + verify, outside any session.

    Returns (ResolvedInput, VerificationOutcome); both are None when the
    payload was blank.
    """
    initial_state: VerificationState = {
        "raw_payload": raw_payload,
        "fallback_secret": fallback_secret,
        "resolved": None,
        "client": client,
        "outcome": None,
        "errors": [],
    }

    result = await verification_graph.ainvoke(initial_state)
    return result.get("resolved"), result.get("outcome")
