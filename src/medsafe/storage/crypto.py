"""Field encryption applied before data reaches any store."""

from typing import Optional, TypeVar, Union

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel

from medsafe.config import Settings, settings as default_settings
from medsafe.errors import StorageError

M = TypeVar("M", bound=BaseModel)


class RecordCipher:
    """Fernet (AES-128-CBC + HMAC-SHA256) encryption of records and text."""

    def __init__(self, key: Union[str, bytes]):
        if isinstance(key, str):
            key = key.encode("ascii")
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RecordCipher":
        config = config or default_settings
        if not config.encryption_key:
            raise ValueError("MEDSAFE_ENCRYPTION_KEY is not configured")
        return cls(config.encryption_key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("ascii")

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as e:
            raise StorageError("Stored record could not be decrypted") from e

    def encrypt_text(self, text: str) -> bytes:
        return self.encrypt(text.encode("utf-8"))

    def decrypt_text(self, token: bytes) -> str:
        return self.decrypt(token).decode("utf-8")

    def encrypt_model(self, model: BaseModel) -> bytes:
        return self.encrypt(model.model_dump_json().encode("utf-8"))

    def decrypt_model(self, model_cls: type[M], token: bytes) -> M:
        return model_cls.model_validate_json(self.decrypt(token))
