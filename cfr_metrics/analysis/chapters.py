"""Chapter-level text extraction from eCFR title XML.

eCFR full-title XML nests the hierarchy as ``DIV1``..``DIV9`` elements with a
``TYPE`` attribute (TITLE, SUBTITLE, CHAPTER, SUBCHAPTER, PART, ...) and an
``N`` attribute carrying the label. Chapters are ``<DIV3 TYPE="CHAPTER" N="I">``
in practice, but any ``DIVn`` typed CHAPTER is accepted.

The parser is lxml's event target interface in recover mode, fed in chunks,
so documents are never materialized as a tree and malformed fragments do
not abort extraction. Character data is buffered until the next tag event so
that each contiguous text run is normalized as a whole.
"""

import logging
import re
from collections.abc import Iterable

from lxml import etree

from cfr_metrics.errors import ParseError
from cfr_metrics.schemas.models import UNKNOWN_CHAPTER

logger = logging.getLogger(__name__)

FEED_CHUNK = 1 << 20
_WS_RE = re.compile(r"\s+")
_DIV_RE = re.compile(r"^div\d+$", re.IGNORECASE)


def normalize_text(s: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return _WS_RE.sub(" ", s).strip()


def _local_name(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _attr(attrib, key: str) -> str:
    for name, value in attrib.items():
        if _local_name(name).lower() == key.lower():
            return value
    return ""


class _ChapterTarget:
    """lxml parser target that routes text runs into per-chapter buckets."""

    def __init__(self):
        self.chapters: dict[str, list[str]] = {UNKNOWN_CHAPTER: []}
        self.current = UNKNOWN_CHAPTER
        self._pending: list[str] = []

    def _flush(self) -> None:
        if not self._pending:
            return
        run = normalize_text("".join(self._pending))
        self._pending.clear()
        if run:
            self.chapters[self.current].append(run)

    def start(self, tag, attrib, nsmap=None) -> None:
        self._flush()
        if not _DIV_RE.match(_local_name(tag)):
            return
        if _attr(attrib, "TYPE").lower() != "chapter":
            return
        label = _attr(attrib, "N").strip()
        if label:
            self.current = label
            self.chapters.setdefault(label, [])

    def end(self, tag) -> None:
        self._flush()

    def data(self, text: str) -> None:
        self._pending.append(text)

    def close(self) -> dict[str, str]:
        self._flush()
        return {label: " ".join(runs) for label, runs in self.chapters.items()}


class ChapterExtractor:
    """Turns raw title XML into ``{chapter label: normalized text}``.

    The ``UNKNOWN`` bucket collects text outside any chapter and is always
    present in the result.
    """

    def extract(self, raw: bytes | str) -> dict[str, str]:
        """Extract chapter text from a whole document."""
        if isinstance(raw, str):
            raw = raw.encode("utf-8")
        return self.extract_chunks(
            raw[i:i + FEED_CHUNK] for i in range(0, len(raw), FEED_CHUNK)
        )

    def extract_chunks(self, chunks: Iterable[bytes]) -> dict[str, str]:
        """Extract chapter text from a document delivered in chunks.

        Raises:
            ParseError: The input could not be tokenized at all.
        """
        target = _ChapterTarget()
        parser = etree.XMLParser(
            target=target,
            recover=True,
            huge_tree=True,
            resolve_entities=False,
            no_network=True,
        )
        fed = False
        try:
            for chunk in chunks:
                if chunk:
                    parser.feed(chunk)
                    fed = True
            if not fed:
                return target.close()
            return parser.close()
        except etree.LxmlError as e:
            raise ParseError(f"Unparseable title XML: {e}") from e


def extract_chapters(raw: bytes | str) -> dict[str, str]:
    """Module-level convenience wrapper around ``ChapterExtractor().extract``."""
    return ChapterExtractor().extract(raw)
