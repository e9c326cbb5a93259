import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from .config import CONFIG_STORE_URL, SPLIT_DELIVERY_ATTEMPTS, SPLIT_DELIVERY_TIMEOUT_SECONDS
from .errors import SplitDeliveryError

logger = logging.getLogger(__name__)


def post_split(instruction: Dict[str, Any], base_url: str, timeout: float) -> Dict[str, Any]:
    """
    instruction: the apply-split payload produced on promotion, e.g.
      {
        "instruction_id": "exp-1:B",
        "experiment_id": "exp-1",
        "winner": "B",
        "variant_ref": "deploy_def",
        "variant_b_percentage": 100.0,
        "issued_at": 1760000000.0
      }

    Returns the config store's JSON reply ({} when it sends no body).
    """
    url = f"{base_url.rstrip('/')}/splits"
    resp = requests.post(url, json=instruction, timeout=timeout)
    resp.raise_for_status()
    if not resp.content:
        return {}
    return resp.json()


class SplitPublisher:
    """Delivers apply-split instructions to the external configuration store.

    The store is expected to dedupe on instruction_id, so delivering the same
    instruction again is harmless. An empty base_url means routing is served
    from this engine's own config and every instruction counts as applied.
    """

    def __init__(
        self,
        base_url: Optional[str] = CONFIG_STORE_URL,
        attempts: int = SPLIT_DELIVERY_ATTEMPTS,
        timeout: float = SPLIT_DELIVERY_TIMEOUT_SECONDS,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url
        self.attempts = max(1, attempts)
        self.timeout = timeout
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

    def deliver(self, instruction: Dict[str, Any]) -> None:
        """Raise SplitDeliveryError unless the store acknowledged the instruction."""
        if not self.base_url:
            logger.info("No config store configured; split %s applied locally",
                        instruction.get("instruction_id"))
            return

        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                reply = post_split(instruction, self.base_url, self.timeout)
                if reply.get("acknowledged", True):
                    logger.info("Config store acknowledged split %s", instruction.get("instruction_id"))
                    return
                last_error = f"not acknowledged: {reply}"
            except (requests.RequestException, ValueError) as exc:
                last_error = str(exc)
            logger.warning("Split delivery attempt %d/%d for %s failed: %s",
                           attempt, self.attempts, instruction.get("instruction_id"), last_error)
            if attempt < self.attempts:
                self.sleep(self.backoff_seconds * attempt)

        raise SplitDeliveryError(
            f"split {instruction.get('instruction_id')} not acknowledged: {last_error}"
        )
