import hashlib
import hmac
import re

from passlib.context import CryptContext

from config import IDENTITY_HASH_SALT

# bcrypt for admin and member passwords
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=12)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_identity(value: str | None, digits_only: bool = False) -> str | None:
    """Salted SHA-256 of a customer identifier (e-mail, tax document).

    Lets a license be correlated with its buyer without storing the plaintext.
    Documents are reduced to their digits so "123.456.789-00" and "12345678900"
    hash alike.
    """
    if not value:
        return None
    normalized = value.strip().lower()
    if digits_only:
        normalized = re.sub(r"\D", "", normalized)
        if not normalized:
            return None
    return hmac.new(
        IDENTITY_HASH_SALT.encode(), normalized.encode(), hashlib.sha256
    ).hexdigest()
