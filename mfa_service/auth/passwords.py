"""
Password hashing capability.

bcrypt behind two functions so the flows only ever see hash() and verify().
"""
import bcrypt


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plain text password.
        rounds: bcrypt cost factor.

    Returns:
        Bcrypt hash string.
    """
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify a password against its hash.

    A missing or malformed stored hash never verifies.
    """
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            password.encode('utf-8'),
            password_hash.encode('utf-8')
        )
    except ValueError:
        return False
