import json
import logging
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional
import hashlib

from ..interfaces import IEvidenceCollector

logger = logging.getLogger(__name__)

SAMPLE_BYTES = 2048


class EvidenceCollector(IEvidenceCollector):
    """
    Journal of failed transfers: one JSON line per failure in
    failed_transfers.jsonl, plus a truncated body sample when one exists.
    """

    def __init__(self, run_id: str, logs_dir: str = "logs"):
        self.run_id = run_id
        self.logs_dir = Path(logs_dir)
        self.journal_path = self.logs_dir / "failed_transfers.jsonl"
        self.responses_dir = self.logs_dir / "failed_responses"

        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self.responses_dir.mkdir(parents=True, exist_ok=True)

    def log_failed_transfer(
        self,
        method: str,
        url: str,
        error_kind: str,
        message: str,
        headers: Dict[str, str],
        context: Dict[str, Any],
        response_body: Optional[bytes] = None
    ):
        """
        Append failure metadata to the JSONL journal and save a body sample if provided.
        """
        # Redact secrets from headers
        safe_headers = {k: v for k, v in headers.items() if 'auth' not in k.lower() and 'key' not in k.lower()}

        entry = {
            "timestamp": datetime.now().isoformat(),
            "run_id": self.run_id,
            "method": method,
            "url": url,
            "error_kind": error_kind,
            "message": message,
            "headers": safe_headers,
            "context": context,
        }

        if response_body:
            body_hash = hashlib.sha256(response_body).hexdigest()[:16]
            body_sample_path = self.responses_dir / f"{body_hash}.txt"
            entry["body_sample_path"] = str(body_sample_path)

            try:
                with open(body_sample_path, "wb") as f:
                    f.write(response_body[:SAMPLE_BYTES])
                    if len(response_body) > SAMPLE_BYTES:
                        f.write(b"\n...[TRUNCATED]")
            except OSError as e:
                entry["body_save_error"] = str(e)

        try:
            with open(self.journal_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error("Failed to write evidence journal: %s", e)
