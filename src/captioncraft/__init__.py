"""Job orchestration for the CaptionCraft media-captioning pipeline."""

__version__ = "0.1.0"
