from .pool import SignerAccount, SignerPool

__all__ = ["SignerAccount", "SignerPool"]
