"""
keystone/accounts.py

Account lifecycle outside of login: email verification and password reset.

Tokens are single use. The raw token is handed to the delivery step once;
the database only keeps its SHA-256 hash and an expiry timestamp. Consuming
a token clears both columns, so a replayed token finds nothing.

Email delivery is not part of this backend. `deliver_token` stands in for it
with a tagged log line (the raw token is printed in dev only).
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Optional

from keystone import config
from keystone.auth_context import generate_account_token, hash_password, hash_token
from keystone.entitlements import parse_timestamp


def deliver_token(kind: str, email: str, token: str) -> None:
    if config.IS_DEV:
        print(f"[EMAIL] {kind} for {email}: token={token}")
    else:
        print(f"[EMAIL] {kind} queued for {email}")


def _find_by_token(
    conn: sqlite3.Connection,
    token_column: str,
    expires_column: str,
    token: str,
    now: datetime,
) -> Optional[sqlite3.Row]:
    row = conn.execute(
        f"SELECT id, tenant_id, email, {expires_column} AS expires_at FROM users WHERE {token_column} = ?",
        (hash_token(token),),
    ).fetchone()
    if row is None:
        return None
    expires_at = parse_timestamp(row["expires_at"])
    if expires_at is None or expires_at < now:
        return None
    return row


# ============================================================================
# Email verification
# ============================================================================

def issue_email_verification(
    conn: sqlite3.Connection,
    user_id: int,
    now: Optional[datetime] = None,
) -> str:
    """Store a fresh verification token for the user and return the raw token. Caller commits."""
    now = now or datetime.now(timezone.utc)
    token = generate_account_token()
    expires_at = now + timedelta(hours=config.EMAIL_VERIFICATION_TTL_HOURS)
    conn.execute(
        "UPDATE users SET email_verification_token = ?, email_verification_expires = ? WHERE id = ?",
        (hash_token(token), expires_at.isoformat(), user_id),
    )
    return token


def verify_email(conn: sqlite3.Connection, token: str, now: Optional[datetime] = None) -> Optional[int]:
    """
    Consume a verification token. Marks the user and its tenant as verified.

    Returns:
        The verified user id, or None if the token is unknown, used or expired
    """
    now = now or datetime.now(timezone.utc)
    row = _find_by_token(conn, "email_verification_token", "email_verification_expires", token, now)
    if row is None:
        return None

    conn.execute(
        """
        UPDATE users
        SET email_verified = 1, email_verification_token = NULL, email_verification_expires = NULL
        WHERE id = ?
        """,
        (row["id"],),
    )
    conn.execute("UPDATE tenants SET email_verified = 1 WHERE id = ?", (row["tenant_id"],))
    conn.commit()
    print(f"[ACCOUNT] Email verified: user_id={row['id']} tenant_id={row['tenant_id']}")
    return row["id"]


# ============================================================================
# Password reset
# ============================================================================

def issue_password_reset(conn: sqlite3.Connection, email: str, now: Optional[datetime] = None) -> Optional[str]:
    """
    Store a reset token for the account with this email.

    Returns:
        The raw token, or None when no account uses the email. Callers must
        answer both cases identically.
    """
    now = now or datetime.now(timezone.utc)
    row = conn.execute("SELECT id FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
    if row is None:
        if config.IS_DEV:
            print("[ACCOUNT] Password reset requested for unknown email")
        return None

    token = generate_account_token()
    expires_at = now + timedelta(minutes=config.PASSWORD_RESET_TTL_MINUTES)
    conn.execute(
        "UPDATE users SET password_reset_token = ?, password_reset_expires = ? WHERE id = ?",
        (hash_token(token), expires_at.isoformat(), row["id"]),
    )
    conn.commit()
    print(f"[ACCOUNT] Password reset issued: user_id={row['id']}")
    return token


def reset_password(
    conn: sqlite3.Connection,
    token: str,
    new_password: str,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Consume a reset token and store the new password hash.

    Returns:
        The user id, or None if the token is unknown, used or expired
    """
    now = now or datetime.now(timezone.utc)
    row = _find_by_token(conn, "password_reset_token", "password_reset_expires", token, now)
    if row is None:
        return None

    conn.execute(
        """
        UPDATE users
        SET password_hash = ?, password_reset_token = NULL, password_reset_expires = NULL
        WHERE id = ?
        """,
        (hash_password(new_password), row["id"]),
    )
    conn.commit()
    print(f"[ACCOUNT] Password reset: user_id={row['id']}")
    return row["id"]
