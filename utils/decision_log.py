"""Append-only JSONL sink for per-cycle decision records."""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from utils.log_contracts import cycle_decision_event, settlement_event

logger = logging.getLogger(__name__)


class DecisionLogWriter:
    def __init__(self, path: str, *, enabled: bool = True, run_tag: str = "") -> None:
        self.enabled = bool(enabled)
        self.path = os.path.abspath(path)
        self.run_tag = run_tag

    def write(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            if str(event.get("decision_stage", "")) == "settle":
                row = settlement_event(dict(event), run_tag=self.run_tag)
            else:
                row = cycle_decision_event(dict(event), run_tag=self.run_tag)
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(row, ensure_ascii=False, default=str) + "\n")
        except OSError:
            logger.exception("DECISION_LOG write failed path=%s", self.path)
