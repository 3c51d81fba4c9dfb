"""Perceptual fingerprint engines for image dedup.

Two engines are available: a 63-bit vertical gradient hash (the default, stored
in the ledger as a decimal integer) and a 16x16 DCT perceptual hash backed by
``imagehash`` (stored as hex). Only exact equality is used for dedup.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Any, Dict

import imagehash
import numpy as np
from PIL import Image

from imgmirror.errors import ConfigError, FingerprintError
from imgmirror.storage.models import Fingerprint

# Rec. 709 luma coefficients
_LUMA = np.array([0.2126, 0.7152, 0.0722])
_HEX_RE = re.compile(r"^[0-9a-f]+$")


class FingerprintEngine(ABC):
    """Pure, deterministic image -> fingerprint strategy with a text codec."""

    name: str = ""

    @abstractmethod
    def fingerprint(self, image: Image.Image) -> Fingerprint:
        """Hash a decoded image. Raises FingerprintError on failure."""
        ...

    @abstractmethod
    def parse(self, text: str) -> Fingerprint:
        """Parse the ledger text form. Raises ValueError when malformed."""
        ...

    def format(self, fp: Fingerprint) -> str:
        return str(fp)


class GradientHash(FingerprintEngine):
    """Difference hash over a (width x height) Lanczos thumbnail.

    Every pixel below the top row contributes one bit: 1 when its luminance is
    lower than the pixel directly above it. Bits are packed row-major, so the
    default 9x8 grid yields a 63-bit integer.
    """

    name = "gradient"

    def __init__(self, width: int = 9, height: int = 8) -> None:
        if width < 1 or height < 2:
            raise ValueError("gradient hash needs at least a 1x2 grid")
        self.width = width
        self.height = height

    @property
    def bits(self) -> int:
        return self.width * (self.height - 1)

    def fingerprint(self, image: Image.Image) -> int:
        try:
            lum = self._luminance(image)
        except (OSError, ValueError) as e:
            raise FingerprintError(f"Unable to hash image: {e}") from e

        darker = lum[1:, :] < lum[:-1, :]
        value = 0
        for bit in darker.flat:
            value = (value << 1) | int(bit)
        return value

    def _luminance(self, image: Image.Image) -> np.ndarray:
        # Resample with straight alpha, then read premultiplied samples.
        small = image.convert("RGBA").resize(
            (self.width, self.height), Image.Resampling.LANCZOS
        )
        pixels = np.asarray(small.convert("RGBa"), dtype=np.float64)[..., :3]
        # Scale 8-bit samples to the 16-bit range
        return (pixels * 257.0) @ _LUMA

    def parse(self, text: str) -> int:
        value = int(text.strip())
        if value < 0 or value >= (1 << self.bits):
            raise ValueError(f"fingerprint {value} out of range for {self.bits} bits")
        return value


class PerceptualHash(FingerprintEngine):
    """DCT perceptual hash (``imagehash.phash``) with a configurable grid size."""

    name = "perceptual"

    def __init__(self, hash_size: int = 16) -> None:
        self.hash_size = hash_size

    @property
    def hex_length(self) -> int:
        return (self.hash_size * self.hash_size + 3) // 4

    def fingerprint(self, image: Image.Image) -> str:
        try:
            return str(imagehash.phash(image, hash_size=self.hash_size))
        except (OSError, ValueError) as e:
            raise FingerprintError(f"Unable to hash image: {e}") from e

    def parse(self, text: str) -> str:
        value = text.strip().lower()
        if len(value) != self.hex_length or not _HEX_RE.match(value):
            raise ValueError(f"not a {self.hex_length}-digit hex fingerprint: {text!r}")
        return value


def build_fingerprint_engine(config: Dict[str, Any]) -> FingerprintEngine:
    """Return the engine selected by ``fingerprint.algorithm`` (default: gradient)."""
    fp_cfg = config.get("fingerprint") or {}
    algorithm = (fp_cfg.get("algorithm") or "gradient").lower().strip()
    if algorithm == "gradient":
        return GradientHash(
            width=int(fp_cfg.get("width", 9)),
            height=int(fp_cfg.get("height", 8)),
        )
    if algorithm == "perceptual":
        return PerceptualHash(hash_size=int(fp_cfg.get("hash_size", 16)))
    raise ConfigError(
        f"Unknown fingerprint algorithm: {algorithm}",
        {"algorithm": algorithm},
    )
