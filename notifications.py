"""
outbound "credited" notifications.

the distribution engine hands every event of a newly applied run to a
notifier after the ledger write committed. delivery is fire-and-forget.
"""
import abc
import logging
import queue
from typing import Dict, Any

from models import DistributionEvent

logger = logging.getLogger(__name__)


def credited_message(event: DistributionEvent) -> Dict[str, Any]:
    """payload the notification collaborator consumes."""
    if event.is_company_share:
        title = "Company share recorded"
        body = f"₦{event.amount:.2f} from PSF payment {event.source_payment_id} went to the reserve."
    else:
        title = "MLM bonus credited"
        body = (
            f"You received ₦{event.amount:.2f} from a level {event.depth} "
            f"project support payment."
        )
    return {
        "type": "mlm_credit",
        "member_id": event.beneficiary_id,
        "title": title,
        "message": body,
        "related_id": event.source_payment_id,
        "event_id": event.id,
    }


class Notifier(abc.ABC):
    @abc.abstractmethod
    def credited(self, event: DistributionEvent) -> None:
        """deliver one credit; called after the batch committed."""


class LogNotifier(Notifier):
    def credited(self, event: DistributionEvent) -> None:
        msg = credited_message(event)
        logger.info("Notify %s: %s", msg["member_id"], msg["message"])


class QueueNotifier(Notifier):
    """
    buffers messages for a separate consumer (worker thread, outbox poller).
    never blocks the distribution path: a full queue drops the message.
    """

    def __init__(self, maxsize: int = 10000):
        self.messages: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)

    def credited(self, event: DistributionEvent) -> None:
        try:
            self.messages.put_nowait(credited_message(event))
        except queue.Full:
            logger.warning("Notification queue full, dropping credit %s", event.id)

    def drain(self):
        out = []
        while True:
            try:
                out.append(self.messages.get_nowait())
            except queue.Empty:
                return out
