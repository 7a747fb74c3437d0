"""Supervised Unreal Engine toolchain jobs with live logs and progress."""

__version__ = "0.1.0"
