from .authenticator import Accepted, AuthReason, Authenticator, Rejected, compute_signature, key_hash

__all__ = [
    "Accepted",
    "AuthReason",
    "Authenticator",
    "Rejected",
    "compute_signature",
    "key_hash",
]
