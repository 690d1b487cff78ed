from .compress import EncodeSettings, resolve_encoding, fit, encode_image

__all__ = ["EncodeSettings", "resolve_encoding", "fit", "encode_image"]
