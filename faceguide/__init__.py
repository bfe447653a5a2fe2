"""
Core package init for faceguide.

Makes the `faceguide` modules importable without requiring an editable install.
"""

__all__ = [
    "capture",
    "config",
    "detectors",
    "errors",
    "lifecycle",
    "quality",
    "recognition",
    "session",
    "viz",
    "io_utils",
    "types",
]
