"""Contract for the external proof verifier and ledger.

The engine only depends on the two protocols below. Registration happens
once per level with the number of hidden targets; settlement later checks
the player's claimed count against it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    success: bool


@dataclass(frozen=True)
class FullVerificationResult:
    success: bool
    on_chain_verified: bool = False
    proof: Optional[str] = None


class VerificationGateway(Protocol):
    async def register_secret(self, session_id: str, count: int) -> None: ...

    async def verify_local(self, session_id: str, claimed_count: int) -> VerificationResult: ...

    async def verify_full(self, session_id: str, claimed_count: int) -> FullVerificationResult: ...


class LedgerSubmitter(Protocol):
    async def submit(self, session_id: str, bugs_found: int, proof: Optional[str]) -> str: ...


class InProcessVerificationGateway:
    """Reference gateway that keeps registered counts in memory, per session.

    A claim verifies when it equals the count registered for that session.
    `on_chain` toggles whether full verification reports an on-chain
    confirmation.
    """

    def __init__(self, on_chain: bool = False, latency_s: float = 0.0) -> None:
        self.on_chain = on_chain
        self.latency_s = latency_s
        self.secrets: Dict[str, int] = {}
        self.calls: List[Tuple[str, str, int]] = []

    async def _delay(self) -> None:
        if self.latency_s > 0:
            await asyncio.sleep(self.latency_s)

    async def register_secret(self, session_id: str, count: int) -> None:
        await self._delay()
        if count < 0:
            raise ValueError("invalid_secret")
        self.calls.append(("register_secret", session_id, count))
        self.secrets[session_id] = count

    def _check(self, session_id: str, claimed_count: int) -> bool:
        if session_id not in self.secrets:
            raise RuntimeError(f"secret_not_registered session={session_id}")
        return claimed_count == self.secrets[session_id]

    async def verify_local(self, session_id: str, claimed_count: int) -> VerificationResult:
        await self._delay()
        self.calls.append(("verify_local", session_id, claimed_count))
        return VerificationResult(success=self._check(session_id, claimed_count))

    async def verify_full(self, session_id: str, claimed_count: int) -> FullVerificationResult:
        await self._delay()
        self.calls.append(("verify_full", session_id, claimed_count))
        ok = self._check(session_id, claimed_count)
        proof = None
        if ok:
            proof = hashlib.sha256(f"{session_id}:{claimed_count}".encode()).hexdigest()
        logger.info(f"[bughunt] verify-full session={session_id} success={ok} on_chain={ok and self.on_chain}")
        return FullVerificationResult(success=ok, on_chain_verified=ok and self.on_chain, proof=proof)
