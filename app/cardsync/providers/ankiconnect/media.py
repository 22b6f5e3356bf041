from __future__ import annotations

import base64
import hashlib
import html
import logging
import re
from pathlib import Path
from typing import Literal, NamedTuple
from urllib.parse import quote, unquote

from pydantic import BaseModel

from cardsync.core.config import MediaConfig, TranscodeConfig
from cardsync.core.errors import TRANSPORT_ERRORS, RpcError
from cardsync.transcode.base import code_spans

logger = logging.getLogger("media")

EMBED_RE = re.compile(r"!\[\[([^\]\n]+)\]\]")
MARKDOWN_IMAGE_RE = re.compile(r"!\[([^\]\n]*)\]\(([^)\n]+)\)")
HTML_MEDIA_RE = re.compile(r"<(?:img|audio|video|source)\b[^>]*?\bsrc=\"([^\"]+)\"[^>]*>", re.IGNORECASE)

MEDIA_EXTENSIONS: dict[str, set[str]] = {
    "image": {"png", "jpg", "jpeg", "gif", "svg", "webp", "bmp"},
    "audio": {"mp3", "wav", "ogg", "m4a", "flac", "aac"},
    "video": {"mp4", "webm", "ogv", "mov", "avi", "mkv"},
}
DEFAULT_DOWNLOAD_DIR = "attachments"


class MediaOutsideRoot(ValueError):
    pass


class MediaReference(BaseModel):
    syntax: Literal["embed", "markdown", "html"]
    raw: str
    target: str
    alt: str = ""
    start: int
    end: int


class MediaOutcome(BaseModel):
    target: str
    status: Literal["uploaded", "backlink", "missing", "rejected", "unsupported", "failed"]
    kind: str | None = None
    filename: str | None = None
    size: int = 0
    backlink_url: str | None = None
    error: str | None = None


class MediaTransferResult(NamedTuple):
    content: str
    outcomes: list[MediaOutcome]
    warnings: list[str]


def classify(name: str) -> str | None:
    ext = Path(name).suffix.lower().lstrip(".")
    for kind, extensions in MEDIA_EXTENSIONS.items():
        if ext in extensions:
            return kind
    return None


def _is_remote(target: str) -> bool:
    return "://" in target or target.startswith("data:")


class MediaTransferService:
    def __init__(
        self,
        client,
        media_root: str | Path,
        *,
        size_threshold_bytes: int = 5 * 1024 * 1024,
        vault_name: str = "",
        deep_link_scheme: str = "obsidian",
        enabled: bool = True,
    ):
        self.client = client
        self.media_root = Path(media_root)
        self.size_threshold_bytes = size_threshold_bytes
        self.vault_name = vault_name
        self.deep_link_scheme = deep_link_scheme
        self.enabled = enabled

    @classmethod
    def from_config(cls, client, media: MediaConfig, transcode: TranscodeConfig) -> "MediaTransferService":
        return cls(
            client,
            media.media_root,
            size_threshold_bytes=int(media.size_threshold_mb * 1024 * 1024),
            vault_name=transcode.vault_name,
            deep_link_scheme=transcode.deep_link_scheme,
            enabled=media.enabled,
        )

    def extract_references(self, content: str) -> list[MediaReference]:
        protected = code_spans(content)
        refs: list[MediaReference] = []
        for m in EMBED_RE.finditer(content):
            target = m.group(1).split("|", 1)[0].strip()
            if classify(target) is None:
                # ![[Some note]] is a transclusion, not media
                continue
            refs.append(MediaReference(syntax="embed", raw=m.group(0), target=target, start=m.start(), end=m.end()))
        for m in MARKDOWN_IMAGE_RE.finditer(content):
            # drop an optional "title" and undo %20-style escaping
            target = unquote(m.group(2).strip().split(' "', 1)[0].strip("<>"))
            refs.append(
                MediaReference(syntax="markdown", raw=m.group(0), target=target, alt=m.group(1), start=m.start(), end=m.end())
            )
        for m in HTML_MEDIA_RE.finditer(content):
            refs.append(MediaReference(syntax="html", raw=m.group(0), target=m.group(1), start=m.start(), end=m.end()))
        refs = [r for r in refs if not protected.overlaps(r.start, r.end) and not _is_remote(r.target)]
        return sorted(refs, key=lambda r: r.start)

    def _inside_root(self, path: Path) -> bool:
        try:
            path.resolve().relative_to(self.media_root.resolve())
        except ValueError:
            return False
        return True

    def _checked(self, candidate: Path) -> Path | None:
        if not candidate.is_file():
            return None
        if not self._inside_root(candidate):
            raise MediaOutsideRoot(f"media_outside_root: {candidate}")
        return candidate

    def resolve(self, target: str, source_file: str | None = None) -> Path | None:
        """Find the file a reference points at; paths escaping media_root raise MediaOutsideRoot."""
        rel = target.strip()
        if not rel:
            return None
        if rel.startswith("/"):
            return self._checked(self.media_root / rel.lstrip("/"))

        source_dir = Path(source_file).parent if source_file else Path()
        if rel.startswith("./") or rel.startswith("../"):
            return self._checked((self.media_root / source_dir / rel).resolve())

        for candidate in (self.media_root / rel, self.media_root / source_dir / rel):
            found = self._checked(candidate)
            if found is not None:
                return found
        if not self.media_root.is_dir():
            return None
        # bare names resolve like vault links: first file with that name, shortest path wins
        matches = sorted(self.media_root.rglob(Path(rel).name), key=lambda p: (len(p.parts), str(p)))
        return next((p for p in matches if p.is_file()), None)

    def fingerprint(self, content: str, source_file: str | None = None) -> str | None:
        """Digest of size and mtime of every local file `content` references.

        Changes when an attachment is replaced even though the markdown is not.
        """
        if not self.enabled or not content:
            return None
        parts = []
        for ref in self.extract_references(content):
            try:
                path = self.resolve(ref.target, source_file)
            except MediaOutsideRoot:
                continue
            if path is None:
                continue
            stat = path.stat()
            parts.append(f"{ref.target}:{stat.st_size}:{stat.st_mtime_ns}")
        if not parts:
            return None
        return hashlib.sha256("\n".join(sorted(parts)).encode("utf-8")).hexdigest()

    def backlink_url(self, path: Path, anchor: str | None = None) -> str:
        try:
            rel = path.resolve().relative_to(self.media_root.resolve()).as_posix()
        except ValueError:
            rel = path.as_posix()
        url = f"{self.deep_link_scheme}://open?vault={quote(self.vault_name, safe='')}&file={quote(rel, safe='')}"
        if anchor:
            url += "#" + quote(anchor.lstrip("#"), safe="^")
        return url

    @staticmethod
    def native_syntax(kind: str, filename: str, alt: str = "") -> str:
        if kind == "image":
            alt_attr = f' alt="{html.escape(alt)}"' if alt else ""
            return f'<img src="{html.escape(filename)}"{alt_attr}>'
        return f"[sound:{filename}]"

    def _transfer_one(self, ref: MediaReference, source_file: str | None, anchor: str | None) -> tuple[MediaOutcome, str | None]:
        try:
            path = self.resolve(ref.target, source_file)
        except MediaOutsideRoot as e:
            return MediaOutcome(target=ref.target, status="rejected", error=str(e)), None
        if path is None:
            return MediaOutcome(target=ref.target, status="missing", error="media_not_found"), None

        kind = classify(path.name)
        if kind is None:
            return MediaOutcome(target=ref.target, status="unsupported", filename=path.name, error="unsupported_media_type"), None

        size = path.stat().st_size
        if size >= self.size_threshold_bytes:
            url = self.backlink_url(path, anchor)
            link = f'<a href="{html.escape(url)}" class="media-backlink">{html.escape(path.name)}</a>'
            return MediaOutcome(target=ref.target, status="backlink", kind=kind, filename=path.name, size=size, backlink_url=url), link

        data = base64.b64encode(path.read_bytes()).decode("ascii")
        stored = self.client.store_media_file(path.name, data)
        return MediaOutcome(target=ref.target, status="uploaded", kind=kind, filename=stored, size=size), self.native_syntax(kind, stored, ref.alt)

    def transfer(self, content: str, source_file: str | None = None, anchor: str | None = None) -> MediaTransferResult:
        if not self.enabled or not content:
            return MediaTransferResult(content, [], [])

        refs = self.extract_references(content)
        outcomes: list[MediaOutcome] = []
        warnings: list[str] = []
        out: list[str] = []
        last = 0
        for ref in refs:
            if ref.start < last:
                continue
            try:
                outcome, replacement = self._transfer_one(ref, source_file, anchor)
            except TRANSPORT_ERRORS:
                raise
            except (RpcError, OSError) as e:
                outcome, replacement = MediaOutcome(target=ref.target, status="failed", error=str(e)), None

            outcomes.append(outcome)
            if outcome.status not in ("uploaded", "backlink"):
                warnings.append(f"media_{outcome.status}: {ref.target}" + (f" ({outcome.error})" if outcome.status in ("failed", "rejected") else ""))
                logger.warning("media_skipped status=%s target=%s source=%s", outcome.status, ref.target, source_file or "-")
                continue
            out.append(content[last:ref.start])
            out.append(replacement or ref.raw)
            last = ref.end
        out.append(content[last:])
        return MediaTransferResult("".join(out), outcomes, warnings)

    def download(self, filename: str, dest_dir: str | Path | None = None) -> Path | None:
        target_dir = Path(dest_dir) if dest_dir else self.media_root / DEFAULT_DOWNLOAD_DIR
        target = target_dir / Path(filename).name
        if target.exists():
            return target
        data = self.client.retrieve_media_file(filename)
        if not data:
            logger.warning("media_download_missing filename=%s", filename)
            return None
        target_dir.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(base64.b64decode(data))
        tmp.replace(target)
        logger.info("media_downloaded filename=%s path=%s", filename, target)
        return target
