"""
Webhook Event Logger

Logs all incoming carrier and payment webhook events to daily JSONL files
for analysis and debugging.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from order_lifecycle.core.logger import setup_logger

logger = setup_logger(__name__)


class WebhookEventLogger:
    """Appends one JSON object per inbound webhook to ``webhook_events_<date>.jsonl``."""

    def __init__(self, log_dir: str = "logs", enabled: bool = True):
        self.log_dir = Path(log_dir)
        self.enabled = enabled
        if enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

    def log_file_for_date(self, date_str: Optional[str] = None) -> Path:
        if date_str is None:
            date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self.log_dir / f"webhook_events_{date_str}.jsonl"

    def log_event(
        self,
        source: str,
        payload: Any,
        processing_status: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Log a webhook event.

        Args:
            source: Webhook sender (stripe, dhl, colissimo, ...)
            payload: Payload as received (parsed JSON or raw text)
            processing_status: Outcome of processing (http status, order id)

        Returns:
            Path to the log file, None when logging is disabled
        """
        if not self.enabled:
            return None

        log_file = self.log_file_for_date()
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": source,
            "payload": payload,
        }
        if processing_status:
            log_entry["processing_status"] = processing_status

        try:
            with open(log_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_entry, ensure_ascii=False, default=str) + "\n")
            logger.debug(f"Logged {source} webhook event to {log_file}")
        except OSError as e:
            logger.error(f"Failed to write webhook event to log file: {e}")
        return str(log_file)

    def read_events(self, date_str: Optional[str] = None) -> List[Dict[str, Any]]:
        """Read all webhook events logged on a date (today by default)."""
        log_file = self.log_file_for_date(date_str)
        if not log_file.exists():
            return []

        events = []
        with open(log_file, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Failed to parse line {line_num} in {log_file}: {e}")
        return events
