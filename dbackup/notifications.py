"""
Run outcome listeners.

Every dispatched backup produces exactly one terminal RunOutcome. The
scheduler and the ``backup`` CLI command hand it to these listeners:
- log_outcome: one summary line in the application log
- HistoryRecorder: a BackupRun row for the status API
- WebhookNotifier: a JSON POST to a configured URL
"""

import logging
from typing import Callable, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from dbackup import db
from dbackup.models import BackupRun


logger = logging.getLogger(__name__)


def log_outcome(outcome):
    """Log a one-line summary of a finished run."""
    if outcome.succeeded:
        size = outcome.artifact.size if outcome.artifact else 0
        deleted = len(outcome.retention.deleted) if outcome.retention else 0
        logger.info(
            "Backup '%s' completed: %s (%.2f MB, %s old backup(s) removed)",
            outcome.job_name, outcome.location, size / 1024 / 1024, deleted
        )
    else:
        logger.error(
            "Backup '%s' failed at %s step: %s",
            outcome.job_name, outcome.failed_step, outcome.error
        )


class HistoryRecorder:
    """Persists each RunOutcome as a BackupRun row."""

    def __init__(self, app):
        self.app = app

    def __call__(self, outcome):
        with self.app.app_context():
            run = BackupRun.from_outcome(outcome)
            try:
                db.session.add(run)
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise
            return run.id

    def __repr__(self):
        return '<HistoryRecorder>'


class WebhookNotifier:
    """
    Posts run outcomes as JSON to a webhook URL.

    Delivery problems are logged, never raised: a notification failure
    must not affect the run it reports.
    """

    def __init__(
        self,
        url: str,
        on: str = 'all',
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None
    ):
        """
        Args:
            url: Webhook endpoint
            on: 'all' or 'failure'
            timeout: Request timeout in seconds
            client: httpx client to send with (default: a new one)
        """
        self.url = url
        self.on = on
        self.client = client or httpx.Client(timeout=timeout)

    def should_notify(self, outcome) -> bool:
        if self.on == 'failure':
            return not outcome.succeeded
        return True

    def __call__(self, outcome) -> bool:
        if not self.should_notify(outcome):
            return False

        payload = outcome.to_dict()
        payload['event'] = 'backup.succeeded' if outcome.succeeded else 'backup.failed'

        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Webhook notification for '%s' failed: %s", outcome.job_name, e)
            return False

        logger.debug("Webhook notified for '%s' (HTTP %s)", outcome.job_name, response.status_code)
        return True

    def close(self):
        self.client.close()

    def __repr__(self):
        return f'<WebhookNotifier on={self.on}>'


def build_listeners(app, settings) -> List[Callable]:
    """
    Build the listener chain for an app and its backup settings.

    Args:
        app: Flask app (history is written in its app context)
        settings: resolver.Settings

    Returns:
        List of outcome listeners
    """
    listeners = [log_outcome, HistoryRecorder(app)]

    if settings.webhook_url:
        listeners.append(WebhookNotifier(settings.webhook_url, on=settings.notify_on))
        logger.info("Webhook notifications enabled (on: %s)", settings.notify_on)

    return listeners
