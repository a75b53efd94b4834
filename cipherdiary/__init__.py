# -*- coding: utf-8 -*-
"""CipherDiary package.

Modules:
    crypto:    PBKDF2 key derivation, content key wrapping, AES-GCM envelopes,
               argon2 password hash.
    db:        SQLite schema + async data access.
    models:    Records shared by the store, auth and sync layers.
    remote:    httpx client for the git-hosting contents API.
    auth:      Session state machine and its async driver.
    sync:      Push/pull, auto-sync and bulk operations.
    conflict:  Conflict state and resolution choice.
    logic:     App config, wiring and the local-first editor.
    archive:   Plaintext zip export and import.
    errors:    Exception taxonomy.
    ui:        Textual-based UI (screens, modals, app).
"""

__all__ = ["archive", "auth", "conflict", "crypto", "db", "errors", "logic", "models", "remote", "sync", "ui"]
