"""
Country passport photo specifications.

Dimensions are stored in millimetres and converted to pixels with the DPI:
pixels = mm * dpi / 25.4. Face/eye fractions are relative to the canvas height.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional, Tuple

from passportcheck.core.errors import UnsupportedCountry
from passportcheck.core.models import CountrySpec

WHITE = (255, 255, 255)
LIGHT_GREY = (240, 240, 240)

_COUNTRY_SPECS: Tuple[CountrySpec, ...] = (
    CountrySpec(
        code="US", name="United States",
        width_mm=51, height_mm=51, dpi=300,
        face_height=0.69, eye_level_from_top=0.35, face_center_from_top=0.42,
        background_rgb=WHITE,
        min_file_size=54 * 1024,
    ),
    CountrySpec(
        code="GB", name="United Kingdom",
        width_mm=35, height_mm=45, dpi=300,
        face_height=0.70, eye_level_from_top=0.38, face_center_from_top=0.45,
        background_rgb=LIGHT_GREY,
    ),
    CountrySpec(
        code="CA", name="Canada",
        width_mm=50, height_mm=70, dpi=300,
        face_height=0.48, eye_level_from_top=0.40, face_center_from_top=0.45,
        background_rgb=WHITE,
        min_top_margin=0.05,
        max_file_size=4 * 1024 * 1024,
    ),
    CountrySpec(
        code="AU", name="Australia",
        width_mm=35, height_mm=45, dpi=300,
        face_height=0.76, eye_level_from_top=0.38, face_center_from_top=0.46,
        background_rgb=WHITE,
    ),
    CountrySpec(
        code="DE", name="Germany",
        width_mm=35, height_mm=45, dpi=300,
        face_height=0.76, eye_level_from_top=0.38, face_center_from_top=0.46,
        background_rgb=LIGHT_GREY,
    ),
    CountrySpec(
        code="FR", name="France",
        width_mm=35, height_mm=45, dpi=300,
        face_height=0.74, eye_level_from_top=0.38, face_center_from_top=0.45,
        background_rgb=LIGHT_GREY,
    ),
    CountrySpec(
        code="IN", name="India",
        width_mm=51, height_mm=51, dpi=300,
        face_height=0.62, eye_level_from_top=0.40, face_center_from_top=0.46,
        background_rgb=WHITE,
    ),
    CountrySpec(
        code="JP", name="Japan",
        width_mm=35, height_mm=45, dpi=300,
        face_height=0.76, eye_level_from_top=0.38, face_center_from_top=0.46,
        background_rgb=WHITE,
    ),
    CountrySpec(
        code="CN", name="China",
        width_mm=33, height_mm=48, dpi=300,
        face_height=0.64, eye_level_from_top=0.38, face_center_from_top=0.44,
        background_rgb=WHITE,
        min_file_size=40 * 1024,
    ),
)

_ALIASES = {"UK": "GB", "USA": "US"}


class SpecRegistry:
    """
    Read-only lookup table from country code to CountrySpec.

    Built once; safe to share between concurrent requests since neither the
    table nor the specs can be mutated.
    """

    def __init__(self, specs: Iterable[CountrySpec], aliases: Optional[Mapping[str, str]] = None) -> None:
        table = {}
        for spec in specs:
            code = spec.code.upper()
            if code in table:
                raise ValueError(f"Duplicate country code: {code}")
            table[code] = spec
        self._specs: Mapping[str, CountrySpec] = MappingProxyType(table)
        self._aliases: Mapping[str, str] = MappingProxyType(
            {k.upper(): v.upper() for k, v in (aliases or {}).items()}
        )

    def lookup(self, country_code: str) -> CountrySpec:
        code = (country_code or "").strip().upper()
        code = self._aliases.get(code, code)
        try:
            return self._specs[code]
        except KeyError:
            raise UnsupportedCountry(country_code) from None

    def codes(self) -> Tuple[str, ...]:
        return tuple(self._specs)

    @property
    def specs(self) -> Mapping[str, CountrySpec]:
        return self._specs

    def __contains__(self, country_code: object) -> bool:
        if not isinstance(country_code, str):
            return False
        code = country_code.strip().upper()
        return self._aliases.get(code, code) in self._specs

    def __iter__(self) -> Iterator[CountrySpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)


_DEFAULT_REGISTRY = SpecRegistry(_COUNTRY_SPECS, aliases=_ALIASES)


def default_registry() -> SpecRegistry:
    """Registry with the built-in country table."""
    return _DEFAULT_REGISTRY
