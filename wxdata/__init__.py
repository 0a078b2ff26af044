"""Local WeChat data: configuration, attachment IDs, .dat decoding, resource lookup, image keys and output helpers."""

__version__ = "0.3.0"

__all__ = [
    "attachment_id",
    "config",
    "decoder",
    "export",
    "image_key",
    "macos_key",
    "output",
    "resolver",
    "timeparse",
]