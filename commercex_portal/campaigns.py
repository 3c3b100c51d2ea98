"""Marketing campaign dispatch.

A campaign is sent one recipient at a time with a fixed pause between
messages. Admins can pause, resume or stop a running campaign through the
campaign document; the sender re-reads it before every recipient. Progress
lives only in the campaign document, a restarted process does not resume an
interrupted send.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable

from bson.errors import InvalidId
from bson.objectid import ObjectId

logger = logging.getLogger(__name__)

MAX_INTERVAL_SECONDS = 5 * 60
PAUSE_POLL_SECONDS = 60
MAX_PAUSE_CHECKS = 60


def personalize(body: str, name: str, email: str) -> str:
    return body.replace('{{customer_name}}', name).replace('{{customer_email}}', email)


def classify_customer(user: dict, order_count: int) -> str:
    if user.get('is_blocked'):
        return 'blocked'
    if order_count == 0:
        return 'new'
    if order_count > 1:
        return 'repeat'
    return 'regular'


def select_recipients(customers: list[dict], group: str, selected_ids: list[str] | None = None) -> list[dict]:
    """Filter classified customers (dicts carrying a `type`) for a send group."""
    if group == 'selected':
        wanted = set(selected_ids or [])
        chosen = [c for c in customers if c['user_id'] in wanted]
    elif group in {'new', 'repeat'}:
        chosen = [c for c in customers if c['type'] == group]
    else:
        chosen = [c for c in customers if c['type'] != 'blocked']
    return [{'email': c.get('email'), 'name': c.get('name'), 'user_id': c['user_id']} for c in chosen]


class CampaignSender:
    def __init__(
        self,
        campaigns_collection: Any,
        users_collection: Any,
        mailer: Any,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.campaigns = campaigns_collection
        self.users = users_collection
        self.mailer = mailer
        self.sleep = sleep

    def _campaign_filter(self, campaign_id: str | None) -> dict | None:
        if not campaign_id:
            return None
        try:
            return {'_id': ObjectId(campaign_id)}
        except (InvalidId, TypeError):
            logger.warning('Campaign id %r is not valid; progress will not be recorded', campaign_id)
            return None

    def _update(self, query: dict | None, fields: dict) -> None:
        if query is not None:
            self.campaigns.update_one(query, {'$set': fields})

    def _state(self, query: dict | None) -> dict:
        if query is None:
            return {}
        return self.campaigns.find_one(query, {'is_paused': 1, 'status': 1}) or {}

    def _wait_while_paused(self, query: dict | None) -> bool:
        """Block while the campaign is paused. Returns False when it was stopped."""
        state = self._state(query)
        if state.get('status') == 'stopped':
            return False
        if not state.get('is_paused'):
            return True

        logger.info('Campaign %s paused, waiting', query['_id'])
        for _ in range(MAX_PAUSE_CHECKS):
            self.sleep(PAUSE_POLL_SECONDS)
            state = self._state(query)
            if not state.get('is_paused') or state.get('status') == 'stopped':
                break
        return self._state(query).get('status') != 'stopped'

    def _resolve_email(self, recipient: dict) -> str:
        email = recipient.get('email') or ''
        user_id = recipient.get('user_id')
        if email or not user_id:
            return email
        try:
            user = self.users.find_one({'_id': ObjectId(user_id)}, {'email': 1})
        except (InvalidId, TypeError):
            return ''
        return (user or {}).get('email') or ''

    def run(
        self,
        campaign_id: str | None,
        recipients: list[dict],
        subject: str,
        body: str,
        interval_minutes: float = 1,
    ) -> dict[str, Any]:
        query = self._campaign_filter(campaign_id)
        total = len(recipients)
        self._update(query, {
            'status': 'sending',
            'total_count': total,
            'pending_count': total,
            'send_interval_minutes': interval_minutes,
        })

        sent_count = 0
        failed_count = 0
        errors: list[str] = []
        stopped = False

        for index, recipient in enumerate(recipients):
            if not self._wait_while_paused(query):
                stopped = True
                logger.info('Campaign %s stopped after %s recipients', campaign_id, index)
                break

            position = index + 1
            email = self._resolve_email(recipient)
            if not email:
                failed_count += 1
                user_ref = (recipient.get('user_id') or 'unknown')[:8]
                errors.append(f'[{position}] No email for user {user_ref}')
            else:
                name = recipient.get('name') or 'Customer'
                sent, reason = self.mailer.send(email, subject, personalize(body, name, email))
                if sent:
                    sent_count += 1
                else:
                    failed_count += 1
                    errors.append(f'[{position}] {email}: {reason}')

            self._update(query, {
                'sent_count': sent_count,
                'failed_count': failed_count,
                'pending_count': total - (sent_count + failed_count),
                'error_log': '\n'.join(errors),
            })

            if index < total - 1 and interval_minutes > 0:
                self.sleep(min(interval_minutes * 60, MAX_INTERVAL_SECONDS))

        final = {
            'sent_count': sent_count,
            'failed_count': failed_count,
            'pending_count': 0,
            'error_log': '\n'.join(errors),
            'sent_at': datetime.utcnow(),
        }
        if not stopped:
            final['status'] = 'failed' if total and failed_count == total else 'sent'
        self._update(query, final)

        logger.info('Campaign %s finished: sent=%s failed=%s', campaign_id, sent_count, failed_count)
        return {'success': True, 'sent_count': sent_count, 'failed_count': failed_count, 'errors': errors}
