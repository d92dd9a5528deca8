"""Short-lived storage for analyzed uploads between preview and confirm.

A session is created by preview, read any number of times, consumed once by
confirm and forgotten after an idle TTL. Two backends share one interface:
an in-process map for a single worker and a PostgreSQL table for several.
"""

import json
import logging
import os
import secrets
import threading
from datetime import datetime, timedelta

from db import db_connection, db_execute
from reconciliation import UploadAnalysis

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30
DEFAULT_MAX_ENTRIES = 100


class SessionError(Exception):
    error_code = 'session_error'
    http_status = 400
    default_message = 'Upload session is not usable. Please upload the file again.'

    def __init__(self, token, message=None):
        super().__init__(message or self.default_message)
        self.token = token
        self.message = message or self.default_message

    def to_dict(self):
        return {'success': False, 'error': self.error_code, 'message': self.message}


class SessionNotFound(SessionError):
    error_code = 'session_not_found'
    http_status = 404
    default_message = 'Upload session not found. Please upload the file again.'


class SessionExpired(SessionError):
    error_code = 'session_expired'
    http_status = 410
    default_message = 'Upload session expired. Please upload the file again.'


class SessionAlreadyConsumed(SessionError):
    error_code = 'session_already_consumed'
    http_status = 409
    default_message = 'This upload was already confirmed. Upload the file again to apply it a second time.'


def new_token():
    return secrets.token_urlsafe(18)


class ReconciliationSessionStore:
    """Interface shared by the session backends."""

    def create(self, analysis):
        raise NotImplementedError

    def get(self, token):
        raise NotImplementedError

    def consume(self, token):
        raise NotImplementedError

    def purge_expired(self):
        raise NotImplementedError


class _Entry:
    __slots__ = ('analysis', 'created_at', 'touched_at', 'consumed_at', 'lock')

    def __init__(self, analysis, now):
        self.analysis = analysis
        self.created_at = now
        self.touched_at = now
        self.consumed_at = None
        self.lock = threading.Lock()


class InMemorySessionStore(ReconciliationSessionStore):
    """Per-process store. Sessions are lost on restart.

    Expired or evicted tokens are remembered for one more TTL so a late
    confirm is told the session expired instead of that it never existed.
    """

    def __init__(self, ttl_minutes=DEFAULT_TTL_MINUTES, max_entries=DEFAULT_MAX_ENTRIES, clock=datetime.now):
        self.ttl = timedelta(minutes=ttl_minutes)
        self.max_entries = max_entries
        self.clock = clock
        self._entries = {}
        self._tombstones = {}
        self._map_lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def _retire(self, token, now):
        self._entries.pop(token, None)
        self._tombstones[token] = now

    def purge_expired(self):
        now = self.clock()
        with self._map_lock:
            self._purge(now)

    def _purge(self, now):
        cutoff = now - self.ttl
        for token in [tok for tok, entry in self._entries.items() if entry.touched_at < cutoff]:
            self._retire(token, now)
        for token in [tok for tok, retired_at in self._tombstones.items() if retired_at < cutoff]:
            self._tombstones.pop(token, None)
        # Keep memory bounded in long-running process.
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1].touched_at)[:overflow]
            for token, _entry in oldest:
                self._retire(token, now)

    def create(self, analysis):
        now = self.clock()
        token = new_token()
        with self._map_lock:
            self._entries[token] = _Entry(analysis, now)
            self._purge(now)
        return token

    def _live_entry(self, token):
        token = (token or '').strip()
        now = self.clock()
        with self._map_lock:
            entry = self._entries.get(token)
            if entry is None:
                if token in self._tombstones:
                    raise SessionExpired(token)
                raise SessionNotFound(token)
            if entry.touched_at < now - self.ttl:
                self._retire(token, now)
                raise SessionExpired(token)
        return entry, now

    def get(self, token):
        entry, now = self._live_entry(token)
        entry.touched_at = now
        return entry.analysis

    def consume(self, token):
        entry, now = self._live_entry(token)
        with entry.lock:
            if entry.consumed_at is not None:
                raise SessionAlreadyConsumed(token)
            entry.consumed_at = now
            entry.touched_at = now
        return entry.analysis


class PostgresSessionStore(ReconciliationSessionStore):
    """Sessions in the ``reconciliation_sessions`` table.

    Consumption is one conditional UPDATE, so two workers confirming the
    same token cannot both succeed.
    """

    def __init__(self, ttl_minutes=DEFAULT_TTL_MINUTES, clock=datetime.now, connection=db_connection):
        self.ttl = timedelta(minutes=ttl_minutes)
        self.clock = clock
        self.connection = connection

    def create(self, analysis):
        token = new_token()
        now = self.clock()
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''INSERT INTO reconciliation_sessions (token, payload, created_at, touched_at)
                   VALUES (?, ?, ?, ?)''',
                (token, json.dumps(analysis.to_dict()), now, now),
            )
        return token

    def get(self, token):
        token = (token or '').strip()
        now = self.clock()
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                'SELECT payload, touched_at FROM reconciliation_sessions WHERE token = ?',
                (token,),
            )
            row = c.fetchone()
            if not row:
                raise SessionNotFound(token)
            if row['touched_at'] < now - self.ttl:
                raise SessionExpired(token)
            db_execute(c, 'UPDATE reconciliation_sessions SET touched_at = ? WHERE token = ?', (now, token))
        return UploadAnalysis.from_dict(json.loads(row['payload']))

    def consume(self, token):
        token = (token or '').strip()
        now = self.clock()
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(
                c,
                '''UPDATE reconciliation_sessions
                   SET consumed_at = ?, touched_at = ?
                   WHERE token = ? AND consumed_at IS NULL AND touched_at >= ?
                   RETURNING payload''',
                (now, now, token, now - self.ttl),
            )
            row = c.fetchone()
            if row:
                return UploadAnalysis.from_dict(json.loads(row['payload']))
            db_execute(
                c,
                'SELECT consumed_at, touched_at FROM reconciliation_sessions WHERE token = ?',
                (token,),
            )
            state = c.fetchone()
        if not state:
            raise SessionNotFound(token)
        if state['touched_at'] < now - self.ttl:
            raise SessionExpired(token)
        raise SessionAlreadyConsumed(token)

    def purge_expired(self):
        # Rows stay for a second TTL so late calls still report expiry.
        cutoff = self.clock() - 2 * self.ttl
        with self.connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(c, 'DELETE FROM reconciliation_sessions WHERE touched_at < ?', (cutoff,))
            removed = c.rowcount
        if removed:
            logger.info('Purged %s expired reconciliation sessions', removed)
        return removed


def build_session_store(environ=None):
    environ = os.environ if environ is None else environ
    backend = (environ.get('RECONCILIATION_SESSION_BACKEND') or 'memory').strip().lower()
    ttl_minutes = int(environ.get('RECONCILIATION_SESSION_TTL_MINUTES') or DEFAULT_TTL_MINUTES)
    if backend == 'postgres':
        return PostgresSessionStore(ttl_minutes=ttl_minutes)
    if backend != 'memory':
        raise RuntimeError(f'Unknown RECONCILIATION_SESSION_BACKEND "{backend}". Use "memory" or "postgres".')
    max_entries = int(environ.get('RECONCILIATION_SESSION_MAX_ENTRIES') or DEFAULT_MAX_ENTRIES)
    return InMemorySessionStore(ttl_minutes=ttl_minutes, max_entries=max_entries)
