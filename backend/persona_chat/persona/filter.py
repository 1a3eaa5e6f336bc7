from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from persona_chat.persona.audit import AuditSink
from persona_chat.persona.rewrite import RewriteEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FilterResult:
    """Outcome of filtering one upstream payload."""

    filtered: Any
    raw: Any
    skipped: bool


class PersonaFilter:
    """Apply the persona rewrite to whole upstream payloads."""

    def __init__(
        self,
        engine: RewriteEngine,
        audit_sink: Optional[AuditSink] = None,
        audit_enabled: bool = False,
    ) -> None:
        self._engine = engine
        self._audit_sink = audit_sink
        self._audit_enabled = audit_enabled

    @property
    def engine(self) -> RewriteEngine:
        return self._engine

    def rewrite(self, text: str) -> str:
        return self._engine.rewrite(text)

    async def filter_payload(self, raw: Any, raw_output_allowed: bool = False) -> FilterResult:
        """Return the rewritten payload, or the raw payload when raw output is allowed.

        ``raw_output_allowed`` must already be verified by the caller.
        """

        if raw_output_allowed:
            return FilterResult(filtered=raw, raw=raw, skipped=True)
        await self._audit(raw)
        return FilterResult(filtered=self._engine.deep_rewrite(raw), raw=raw, skipped=False)

    async def _audit(self, raw: Any) -> None:
        if not self._audit_enabled or self._audit_sink is None:
            return
        try:
            await asyncio.to_thread(self._audit_sink.write, raw)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Audit write failed: %s", exc)
