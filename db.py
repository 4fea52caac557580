"""
Durable key-value storage shared by the app and the widget snapshot.
Supabase backs the real store; an in-memory dict serves tests and
credential-less sessions.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

import streamlit as st
from supabase import Client, create_client

logger = logging.getLogger(__name__)

KV_TABLE = 'kv_store'

KV_TABLE_DDL = """
create table if not exists kv_store (
    user_id text not null,
    key text not null,
    value text not null,
    updated_at timestamptz not null default now(),
    primary key (user_id, key)
);
"""


def get_secret(name: str, default=None):
    # prefer Streamlit secrets, fallback to env vars
    try:
        return st.secrets[name]
    except Exception:
        return os.getenv(name, default)


def get_supabase_client() -> Client:
    """Initialize and return a Supabase client from secrets."""
    url = get_secret("SUPABASE_URL")
    key = get_secret("SUPABASE_SERVICE_KEY")
    if not url or not key:
        raise RuntimeError("Missing SUPABASE_URL / SUPABASE_SERVICE_KEY.")
    return create_client(url, key)


class MemoryKeyValueStore:
    """Process-local key-value store."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self.data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SupabaseKeyValueStore:
    """
    Key-value store on a Supabase table, one row per (user_id, key).

    Errors from the client propagate; callers decide whether a failure is
    fatal (loading) or only logged (fire-and-forget saves).
    """

    def __init__(self, client: Client, user_id: str, table: str = KV_TABLE):
        self.client = client
        self.user_id = user_id
        self.table = table

    def get(self, key: str) -> Optional[str]:
        result = (
            self.client.table(self.table)
            .select('value')
            .eq('user_id', self.user_id)
            .eq('key', key)
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0]['value']
        return None

    def set(self, key: str, value: str) -> None:
        self.client.table(self.table).upsert(
            {
                'user_id': self.user_id,
                'key': key,
                'value': value,
                'updated_at': datetime.now(timezone.utc).isoformat(),
            },
            on_conflict='user_id,key',
        ).execute()

    def delete(self, key: str) -> None:
        self.client.table(self.table).delete().eq('user_id', self.user_id).eq('key', key).execute()


def init_schema_if_needed(client: Client) -> bool:
    """
    Verify the key-value table exists.

    Returns:
        True if the table answered a query. When it does not, the DDL is
        logged so it can be run in the Supabase SQL editor.
    """
    try:
        client.table(KV_TABLE).select('key').limit(1).execute()
        return True
    except Exception as e:
        logger.error("kv_store table unavailable (%s). Create it with:%s", e, KV_TABLE_DDL)
        return False


def open_supabase_store(user_id: Optional[str] = None) -> SupabaseKeyValueStore:
    """
    Build the Supabase-backed store for a user.

    Raises:
        RuntimeError: If Supabase credentials are not configured
    """
    client = get_supabase_client()
    init_schema_if_needed(client)
    return SupabaseKeyValueStore(client, user_id or get_secret("OFFICE_TRACKER_USER_ID", "default"))
