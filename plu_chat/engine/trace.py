"""单轮对话的状态轨迹。"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from plu_chat.domain.models import TurnState
from plu_chat.infrastructure.logging.logger import logger


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# 允许的状态迁移；None 表示尚未开始
ALLOWED_TRANSITIONS: Dict[Optional[str], set] = {
    None: {"sent", "failed"},
    "sent": {"awaiting_server", "reconciled", "failed"},
    "awaiting_server": {"reconciled", "failed"},
    "reconciled": set(),
    "failed": set(),
}


class TurnTrace:
    """记录一轮对话的状态迁移；配置了 trace_dir 时落盘为 JSON，便于排查。"""

    def __init__(
        self,
        trace_dir: Optional[str | Path] = None,
        conversation_id: Optional[str] = None,
        document_id: Optional[str] = None,
    ):
        self.trace_id = f"turn-{uuid4().hex}"
        self._dir = Path(trace_dir) if trace_dir else None
        self.state: Optional[TurnState] = None
        self.data: Dict[str, Any] = {
            "trace_id": self.trace_id,
            "turn_id": None,
            "conversation_id": conversation_id,
            "document_id": document_id,
            "started_at": _utcnow(),
            "finished_at": None,
            "final_state": None,
            "transitions": [],
        }

    @property
    def transitions(self) -> List[Dict[str, Any]]:
        return self.data["transitions"]

    def bind(self, turn_id: str, conversation_id: Optional[str]) -> None:
        self.data["turn_id"] = turn_id
        self.data["conversation_id"] = conversation_id

    def transition(self, state: TurnState, **fields: Any) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(f"Illegal turn transition {self.state!r} -> {state!r}")
        self.state = state
        entry: Dict[str, Any] = {"state": state, "timestamp": _utcnow()}
        entry.update(fields)
        self.transitions.append(entry)

    def finalize(self) -> None:
        self.data["finished_at"] = _utcnow()
        self.data["final_state"] = self.state
        if self._dir is None:
            return
        path = self._dir / f"{self.data['turn_id'] or self.trace_id}.json"
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.data, ensure_ascii=False, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to write turn trace", extra={"extra": {"path": str(path), "error": str(e)}})
