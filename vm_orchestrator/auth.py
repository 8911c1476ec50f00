import hashlib
import hmac


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def secure_compare_token(token: str, token_hash: str | None) -> bool:
    if not token_hash:
        return False
    return hmac.compare_digest(hash_token(token), token_hash)


def api_key_valid(presented: str | None, configured: str | None) -> bool:
    if not presented or not configured:
        return False
    return secure_compare_token(presented, hash_token(configured))
