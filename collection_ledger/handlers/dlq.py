import itertools
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """One JSON file per skipped item (log sub-range, transaction, page)
    so gaps can be replayed by hand with ``--from-block/--to-block``."""

    def __init__(self, local_path: str = "./dlq") -> None:
        self.local_path = Path(local_path)
        self.local_path.mkdir(parents=True, exist_ok=True)
        self._seq = itertools.count()

    def send(self, record: Dict[str, Any], error: Exception, context: Optional[Dict[str, Any]] = None) -> Path:
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat(),
            "record": record,
            "error_type": type(error).__name__,
            "error_message": str(error),
            "context": context or {},
        }
        filename = self.local_path / f"{now.strftime('%Y%m%d_%H%M%S_%f')}_{next(self._seq):04d}.json"
        filename.write_text(json.dumps(payload, default=str))
        logger.info("Dead-lettered %s -> %s", record, filename)
        return filename

    def entries(self) -> List[Dict[str, Any]]:
        return [json.loads(path.read_text()) for path in sorted(self.local_path.glob("*.json"))]
