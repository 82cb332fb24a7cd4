"""Structured solver events (JSON lines) for offline analysis."""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

logger = logging.getLogger("robust_pgo.kpi")


class KPILogger:
    """Emit structured events to the logger and/or a JSONL file."""

    def __init__(
        self,
        enabled: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        log_path: Optional[str] = None,
        emit_to_logger: bool = True,
    ):
        self.enabled = enabled
        self._extra = extra_fields.copy() if extra_fields else {}
        self._emit_to_logger = emit_to_logger
        self._fh = None
        if log_path:
            self._fh = open(log_path, "w", encoding="utf-8")

    def _emit(self, event: str, **fields: Any) -> None:
        if not self.enabled:
            return
        payload = {"event": event, "ts": time.time()}
        payload.update(self._extra)
        payload.update({k: v for k, v in fields.items() if v is not None})
        if self._emit_to_logger:
            logger.info("KPI %s", json.dumps(payload, sort_keys=True))
        if self._fh:
            self._fh.write(json.dumps(payload, sort_keys=True) + "\n")
            self._fh.flush()

    def graph_ingest(self, batch_id: int, keys: int, measurements: int, candidates: int) -> None:
        self._emit("graph_ingest", batch_id=batch_id, keys=keys, measurements=measurements, candidates=candidates)

    def outlier_rejection(
        self,
        batch_id: int,
        candidates: int,
        accepted: int,
        rejected: int,
        duration_s: float,
        **fields: Any,
    ) -> None:
        self._emit(
            "outlier_rejection",
            batch_id=batch_id,
            candidates=candidates,
            accepted=accepted,
            rejected=rejected,
            duration_s=duration_s,
            **fields,
        )

    def optimization_start(self, revision: int, factor_count: int, key_count: int) -> None:
        self._emit("optimization_start", revision=revision, factor_count=factor_count, key_count=key_count)

    def optimization_end(
        self,
        revision: int,
        duration_s: float,
        updated_keys: Optional[int] = None,
        *,
        final_error: Optional[float] = None,
        max_translation_delta: Optional[float] = None,
    ) -> None:
        self._emit(
            "optimization_end",
            revision=revision,
            duration_s=duration_s,
            updated_keys=updated_keys,
            final_error=final_error,
            max_translation_delta=max_translation_delta,
        )

    def close(self) -> None:
        if self._fh:
            try:
                self._fh.close()
            finally:
                self._fh = None
