"""Register images found under the image root in the media library."""
import logging
import re
from pathlib import Path
from typing import Union

from webp_delivery import db

logger = logging.getLogger("webp_delivery.library")

LIBRARY_EXTENSIONS = {".jpg": "image/jpeg", ".jpeg": "image/jpeg", ".png": "image/png"}

# photo-300x200.jpg is a size variant of photo.jpg
_VARIANT_RE = re.compile(r"^(?P<stem>.+)-(?P<w>\d+)x(?P<h>\d+)$")


def import_directory(image_root: Union[str, Path]) -> int:
    """Add every JPEG/PNG not yet in the library. Size variants are attached to their original. Returns count added."""
    root = Path(image_root).resolve()
    files = sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in LIBRARY_EXTENSIONS)
    relative = {p.relative_to(root).as_posix() for p in files}

    originals: list[Path] = []
    variants: dict[str, list[str]] = {}
    for p in files:
        m = _VARIANT_RE.match(p.stem)
        if m:
            parent = (p.parent / f"{m.group('stem')}{p.suffix}").relative_to(root).as_posix()
            if parent in relative:
                variants.setdefault(parent, []).append(p.name)
                continue
        originals.append(p)

    known = db.get_attachment_paths()
    imported = 0
    for p in originals:
        rel = p.relative_to(root).as_posix()
        if rel in known:
            continue
        db.register_attachment(rel, LIBRARY_EXTENSIONS[p.suffix.lower()], sizes=sorted(variants.get(rel, [])))
        imported += 1
    logger.info("Library import from %s: %s new of %s originals", root, imported, len(originals))
    return imported
