"""
Syncer package — mirrors Microsoft Teams (teams, channels, chats, members,
messages, replies) from the Graph API into PostgreSQL.

Credentials come from the OAuth device code flow at startup and live only
in memory for the duration of one pass.  All Graph access is read-only
and goes through ``PagedFetcher``.
"""
