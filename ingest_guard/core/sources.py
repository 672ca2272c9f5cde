"""
Source validation and normalization.

Turns a raw source reference (a YouTube URL or video id, a local file
path or a file:// URL) into a canonical source key shared by locking
and caching, so equivalent inputs collide on the same key.
"""

import hashlib
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

from .errors import ValidationError


class SourceKind(Enum):
    """Kinds of content the pipeline ingests, with the feature they consume."""
    YOUTUBE = "youtube"
    PDF = "pdf"
    AUDIO = "audio"

    @property
    def feature(self) -> str:
        return _FEATURES[self]


_FEATURES = {
    SourceKind.YOUTUBE: "youtube_processing",
    SourceKind.PDF: "pdf_processing",
    SourceKind.AUDIO: "audio_transcription",
}

FILE_EXTENSIONS = {
    ".pdf": SourceKind.PDF,
    ".mp3": SourceKind.AUDIO,
    ".m4a": SourceKind.AUDIO,
    ".wav": SourceKind.AUDIO,
    ".aac": SourceKind.AUDIO,
    ".ogg": SourceKind.AUDIO,
    ".flac": SourceKind.AUDIO,
}

VIDEO_ID = re.compile(r"^[A-Za-z0-9_-]{11}$")

YOUTUBE_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/(?:embed|shorts|live)/([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/.*[?&]v=([A-Za-z0-9_-]{11})"),
)

YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com", "youtu.be"}

PDF_MAGIC = b"%PDF-"

SOURCE_KEY = re.compile(r"^(?:youtube:[A-Za-z0-9_-]{11}|(?:pdf|audio):sha256:[0-9a-f]{64})$")


@dataclass(frozen=True)
class Source:
    """A validated source with its canonical key."""
    raw: str
    kind: SourceKind
    key: str
    location: str

    @property
    def feature(self) -> str:
        return self.kind.feature


def extract_video_id(url: str) -> Optional[str]:
    """Extract an 11-character video id from any YouTube URL shape.

    Accepts watch, short (youtu.be), embed, shorts, mobile and
    extra-parameter URLs, or a bare video id.
    """
    if not url or not isinstance(url, str):
        return None
    clean = url.strip()
    if VIDEO_ID.match(clean):
        return clean
    host = (urlparse(clean if "://" in clean else f"https://{clean}").hostname or "").lower()
    if host not in YOUTUBE_HOSTS:
        return None
    for pattern in YOUTUBE_PATTERNS:
        match = pattern.search(clean)
        if match:
            return match.group(1)
    return None


def is_source_key(ref: str) -> bool:
    """True when ref is already a canonical source key rather than a reference."""
    return bool(SOURCE_KEY.match(ref))


def youtube_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def normalize_source(source_ref: str, max_file_size_mb: float = 50.0) -> Source:
    """Validate a raw source reference and compute its source key.

    YouTube sources are keyed by video id. Files are keyed by the SHA-256
    of their content, so the same document uploaded from two paths maps
    to one key.

    Raises:
        ValidationError: Unsupported URL shape, unsupported file type,
            missing, empty, oversized or malformed file
    """
    if not isinstance(source_ref, str) or not source_ref.strip():
        raise ValidationError("A source URL or file reference is required")
    ref = source_ref.strip()

    video_id = extract_video_id(ref)
    if video_id:
        return Source(raw=source_ref, kind=SourceKind.YOUTUBE, key=f"youtube:{video_id}",
                      location=youtube_url(video_id))

    parsed = urlparse(ref)
    if parsed.scheme in ("http", "https"):
        raise ValidationError("Unsupported URL. Please enter a valid YouTube video link.",
                              details={"source_ref": ref})
    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme and len(parsed.scheme) > 1:
        raise ValidationError(f"Unsupported source scheme: {parsed.scheme}", details={"source_ref": ref})
    else:
        path = Path(ref)

    kind = FILE_EXTENSIONS.get(path.suffix.lower())
    if kind is None:
        supported = ", ".join(sorted(FILE_EXTENSIONS))
        raise ValidationError(f"Unsupported file type '{path.suffix or path.name}'. Supported: {supported}",
                              details={"source_ref": ref})
    if not path.is_file():
        raise ValidationError("File does not exist or is not accessible", details={"source_ref": ref})

    size = path.stat().st_size
    if size == 0:
        raise ValidationError("File is empty", details={"source_ref": ref})
    if size > max_file_size_mb * 1024 * 1024:
        raise ValidationError(f"File exceeds the {max_file_size_mb:g} MB limit",
                              details={"source_ref": ref, "size": size})

    digest = hashlib.sha256()
    with open(path, "rb") as f:
        head = f.read(len(PDF_MAGIC))
        if kind is SourceKind.PDF and head != PDF_MAGIC:
            raise ValidationError("File is not a valid PDF", details={"source_ref": ref})
        digest.update(head)
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)

    return Source(raw=source_ref, kind=kind, key=f"{kind.value}:sha256:{digest.hexdigest()}",
                  location=str(path.resolve()))
