"""Subtitle documents built from transcript data.

Transcripts are stored in the speech-to-text provider's verbose JSON shape::

    {"text": "...", "segments": [{"start": 0.0, "end": 2.4, "text": "..."}], "words": [...]}

Only ``segments`` is needed to render SRT cues.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import TranscriptDataError

NAMED_COLORS = {
    "white": "FFFFFF",
    "black": "000000",
    "yellow": "FFFF00",
    "red": "FF0000",
    "green": "00FF00",
    "blue": "0000FF",
}

# Caption position to ASS numpad alignment
ALIGNMENT = {"bottom": 2, "center": 5, "top": 8}


def format_timestamp(seconds: float) -> str:
    """Format seconds as an SRT timestamp ``HH:MM:SS,mmm`` (milliseconds truncated)."""
    total_ms = int(max(0.0, float(seconds)) * 1000)
    whole, millis = divmod(total_ms, 1000)
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{millis:03d}"


def transcript_segments(transcript: Any) -> List[Dict[str, Any]]:
    """Return the segment list of a transcript document.

    Raises:
        TranscriptDataError: If the transcript is missing or ``segments`` is not a list
    """
    if not isinstance(transcript, dict) or not isinstance(transcript.get("segments"), list):
        raise TranscriptDataError()
    return transcript["segments"]


def render_srt(transcript: Dict[str, Any]) -> str:
    cues = []
    for index, segment in enumerate(transcript_segments(transcript), start=1):
        start = format_timestamp(segment.get("start", 0.0))
        end = format_timestamp(segment.get("end", 0.0))
        text = str(segment.get("text", "")).strip()
        cues.append(f"{index}\n{start} --> {end}\n{text}\n")
    return "\n".join(cues) + ("\n" if cues else "")


def write_srt(transcript: Dict[str, Any], output_path: Union[str, Path]) -> Path:
    """Write ``transcript`` as an SRT file and return its path."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(render_srt(transcript), encoding="utf-8")
    return output_path


def _ass_color(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    rgb = NAMED_COLORS.get(value.lower(), value.lstrip("#"))
    if len(rgb) != 6:
        return None
    # ASS colors are &HBBGGRR
    return f"&H{rgb[4:6]}{rgb[2:4]}{rgb[0:2]}".upper()


def force_style(caption_style: Optional[Dict[str, Any]]) -> Optional[str]:
    """Translate a stored caption style into an ffmpeg ``force_style`` string.

    Unknown keys are ignored; returns None when nothing applies.
    """
    if not caption_style:
        return None

    parts = []
    if caption_style.get("fontFamily"):
        parts.append(f"FontName={caption_style['fontFamily']}")
    if caption_style.get("fontSize"):
        parts.append(f"FontSize={int(caption_style['fontSize'])}")

    primary = _ass_color(caption_style.get("fontColor"))
    if primary:
        parts.append(f"PrimaryColour={primary}")
    outline = _ass_color(caption_style.get("strokeColor"))
    if outline:
        parts.append(f"OutlineColour={outline}")
    if caption_style.get("strokeWidth") is not None:
        parts.append(f"Outline={int(caption_style['strokeWidth'])}")

    position = caption_style.get("position")
    if position in ALIGNMENT:
        parts.append(f"Alignment={ALIGNMENT[position]}")
    if caption_style.get("marginVertical") is not None:
        parts.append(f"MarginV={int(caption_style['marginVertical'])}")

    return ",".join(parts) or None
