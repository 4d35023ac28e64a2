"""
Verification session.

Owns the current SessionState (resolved input, outcome, disclosure tier)
and runs the resolve/verify graph for each request. Only the most recently
started request may change the state: starting a new one cancels the one
in flight, and any completion that still arrives late is dropped.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Set

from docverify.models.schemas import Channel, Phase, SessionState
from docverify.scanning.exceptions import ScanError
from docverify.verification import transitions
from docverify.verification.normalizer import normalize
from docverify.verification.pipeline import verification_graph
from docverify.verification.state import VerificationState

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState], None]


class VerificationSession:
    """One user's verification attempt, from input to tiered result."""

    def __init__(self, client, graph=None):
        self.client = client
        self._graph = graph or verification_graph
        self._state = SessionState()
        self._listeners: List[Listener] = []
        self._inflight: Optional[asyncio.Task] = None
        self._superseded: Set[asyncio.Task] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: Listener) -> None:
        """Call `listener` with every new state."""
        self._listeners.append(listener)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        self._state = state
        for listener in self._listeners:
            listener(state)

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def submit(self, raw_payload: str, fallback_secret: Optional[str] = None) -> SessionState:
        """Resolve and verify a payload captured by any channel."""
        if self._state.phase == Phase.RESULT:
            raise transitions.InvalidTransition("resolve a new document", self._state.phase, "reset first")

        # Nothing to resolve: the request in flight (if any) keeps running
        if normalize(raw_payload, fallback_secret) is None:
            logger.info("Nothing to resolve: blank payload")
            self._set_state(transitions.with_notice(self._state, transitions.MISSING_IDENTIFIER))
            return self._state

        return await self._launch({
            "raw_payload": raw_payload,
            "fallback_secret": fallback_secret,
            "resolved": None,
        })

    async def unlock(self, secret: str) -> SessionState:
        """Upgrade a partial result with an access key; the identifier is kept."""
        state = transitions.unlock(self._state, secret)
        self._cancel_inflight()
        self._set_state(state)
        logger.info(f"Unlocking {state.resolved.identifier}")
        return await self._launch({"resolved": state.resolved}, state.generation)

    async def retry(self) -> SessionState:
        """Verify the held input again."""
        state = transitions.retry(self._state)
        self._cancel_inflight()
        self._set_state(state)
        return await self._launch({"resolved": state.resolved}, state.generation)

    def reset(self) -> SessionState:
        self._cancel_inflight()
        self._set_state(transitions.reset(self._state))
        return self._state

    def select_channel(self, channel: Channel) -> SessionState:
        if channel != self._state.active_channel:
            self._cancel_inflight()
        self._set_state(transitions.select_channel(self._state, channel))
        return self._state

    def report(self, error: ScanError) -> SessionState:
        """Surface an acquisition/decode error; the session stays where it is."""
        logger.warning(f"Scan error on {self._state.active_channel.value}: {error}")
        self._set_state(transitions.with_notice(self._state, error.to_notice()))
        return self._state

    # -------------------------------------------------------------------------
    # Request handling
    # -------------------------------------------------------------------------

    def _cancel_inflight(self) -> None:
        task, self._inflight = self._inflight, None
        if task is not None and not task.done():
            self._superseded.add(task)
            task.cancel()

    async def _launch(self, inputs: VerificationState, generation: Optional[int] = None) -> SessionState:
        self._cancel_inflight()
        task = asyncio.ensure_future(self._drive({**inputs, "client": self.client}, generation))
        self._inflight = task

        try:
            await task
        except asyncio.CancelledError:
            if task not in self._superseded:
                raise
            logger.debug("Verification request superseded")
        finally:
            self._superseded.discard(task)
            if self._inflight is task:
                self._inflight = None

        return self._state

    async def _drive(self, inputs: VerificationState, generation: Optional[int]) -> None:
        async for update in self._graph.astream(inputs, stream_mode="updates"):
            for node, values in update.items():
                if node == "resolve":
                    resolved = values.get("resolved")
                    if resolved is None:
                        self._set_state(transitions.with_notice(self._state, transitions.MISSING_IDENTIFIER))
                        return
                    self._set_state(transitions.resolve(self._state, resolved))
                    generation = self._state.generation
                    self._set_state(transitions.begin_verification(self._state))

                elif node == "verify":
                    self._set_state(transitions.complete(self._state, generation, values["outcome"]))
