import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from strategy.models import OutcomeRecord


logger = logging.getLogger(__name__)


class OutcomeRecorder:
    """Appends one JSON line per completed position."""

    def __init__(self, log_path: Optional[str] = None):
        self.log_path = Path(log_path or 'logs/outcomes.jsonl')
        self.recorded = 0

    def record(self, outcome: OutcomeRecord) -> None:
        self._write_entry(outcome.to_dict())

    def _write_entry(self, payload: Dict) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
            self.recorded += 1
        except OSError as exc:
            logger.error("Failed to persist outcome log: %s", exc)

    def read_all(self) -> List[Dict]:
        if not self.log_path.exists():
            return []
        entries = []
        with self.log_path.open('r', encoding='utf-8') as handle:
            for line in handle:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries
