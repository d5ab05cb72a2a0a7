"""
SQL models for ambient state.

Board owners and their configs live in the Users sheet, not here.
"""
from sqlalchemy import Boolean, Column, DateTime, String, Text

from database import Base


class ScriptProperty(Base):
    """
    Durable key/value entry (the third cache tier and system settings).

    - key: property name, e.g. ADMIN_EMAIL or service_account_token.
    - value: JSON-encoded payload; Fernet-encrypted when is_encrypted.
    - expires_at: UTC expiry for cached entries; null for settings.
    """
    __tablename__ = "script_properties"

    key = Column(String(255), primary_key=True, index=True)
    value = Column(Text, nullable=False)
    is_encrypted = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class OAuthAccount(Base):
    """
    Google OAuth state for a signed-in teacher.

    - email: Google account email, primary key (sessions identify by email).
    - encrypted_access_token / encrypted_refresh_token: Fernet-encrypted;
      decrypted only to re-share a spreadsheet with the service account.
    - access_token_expires_at: UTC time when access token expires.
    """
    __tablename__ = "oauth_accounts"

    email = Column(String(255), primary_key=True, index=True)
    google_sub = Column(String(255), nullable=True)
    name = Column(String(255))

    encrypted_access_token = Column(String(2048), nullable=False)
    encrypted_refresh_token = Column(String(2048), nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
