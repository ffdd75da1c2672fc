"""Font family -> bundled font file mapping."""

from dataclasses import dataclass
from pathlib import Path

DEFAULT_FONT_FAMILY = "Noto Sans KR"

# Families shipped in the template bundle's fonts/ directory
FONT_FILES: dict[str, str] = {
    "Noto Sans KR": "NotoSansKR-Bold.ttf",
    "Hakgyoansim Gongryongal": "Hakgyoansim_GongryongalR.ttf",
    "KERISKEDU Line": "KERISKEDU_Line.ttf",
    "Solinsunny": "Solinsunny.ttf",
    "OK DDUNG": "OK DDUNG.ttf",
    "Sinchon Rhapsody": "SinchonRhapsody-ExtraBold.ttf",
}


@dataclass(frozen=True)
class FontFace:
    family: str
    file: str | None  # Relative to the bundle root, None when not shipped

    def to_props(self) -> dict:
        return {"family": self.family, "url": self.file}


def normalize_family(family: str | None) -> str:
    """``"'Noto Sans KR', sans-serif"`` -> ``"Noto Sans KR"``."""
    if not family:
        return DEFAULT_FONT_FAMILY
    first = family.split(",")[0].strip().strip("'\"")
    return first or DEFAULT_FONT_FAMILY


def resolve_font(family: str | None, bundle_dir: Path) -> FontFace:
    """Pick the bundled file for ``family``, falling back to the default family.

    When neither file is present the browser falls back to system fonts.
    """
    name = normalize_family(family)
    for candidate in (name, DEFAULT_FONT_FAMILY):
        filename = FONT_FILES.get(candidate)
        if filename and (bundle_dir / "fonts" / filename).is_file():
            return FontFace(family=candidate, file=f"fonts/{filename}")
    return FontFace(family=name, file=None)
