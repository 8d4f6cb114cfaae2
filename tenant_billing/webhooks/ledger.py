from sqlalchemy.exc import IntegrityError

from tenant_billing.errors import DuplicateEventError
from tenant_billing.extensions import db
from tenant_billing.models import ProcessedWebhookEvent


class WebhookLedger:
    """
    Deduplication ledger keyed by (provider, external event id).

    The unique constraint is the authority: a conflicting insert means the
    event was already accepted by another delivery.
    """

    @staticmethod
    def is_processed(provider, external_event_id):
        return db.session.query(
            ProcessedWebhookEvent.query
            .filter_by(provider=provider, external_event_id=external_event_id)
            .exists()
        ).scalar()

    @staticmethod
    def record(provider, external_event_id, event_type):
        """
        Insert the ledger row in the current transaction.

        Must be the first write of the transaction: a conflict rolls the
        session back before raising DuplicateEventError.
        """
        entry = ProcessedWebhookEvent(
            provider=provider,
            external_event_id=external_event_id,
            event_type=event_type,
        )
        db.session.add(entry)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise DuplicateEventError(provider, external_event_id) from None
        return entry
