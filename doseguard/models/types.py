from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from ..services.encryption import decrypt_text, encrypt_text


class EncryptedText(TypeDecorator):
    """Free-text column encrypted at rest (skip notes, undo reasons)."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return encrypt_text(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return decrypt_text(value)
