from .credential_formatter import mask_secret

__all__ = ["mask_secret"]
