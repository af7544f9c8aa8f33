"""Runtime image measurements: export and verification."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import cbor2

MismatchReason = Literal["missing_actual", "unexpected_actual", "value_mismatch"]


@dataclass(frozen=True, slots=True)
class MeasurementMismatch:
    key: str
    reason: MismatchReason
    expected: str | None
    actual: str | None
    hint: str


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    mismatches: tuple[MeasurementMismatch, ...] = ()


@dataclass(frozen=True, slots=True)
class ImageMeasurements:
    """SHA-256 digests of everything a runtime image is made of."""

    values: dict[str, str] = field(default_factory=dict)
    schema_version: int = 1

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    @classmethod
    def from_json(cls, raw: str) -> ImageMeasurements:
        payload = json.loads(raw)
        return cls(
            values=dict(payload.get("values", {})),
            schema_version=int(payload.get("schema_version", 1)),
        )

    def verify(self, expected: dict[str, str]) -> VerificationResult:
        mismatches: list[MeasurementMismatch] = []
        for key, expected_value in sorted(expected.items()):
            if key not in self.values:
                mismatches.append(
                    MeasurementMismatch(
                        key=key,
                        reason="missing_actual",
                        expected=expected_value,
                        actual=None,
                        hint="The image does not record this entry.",
                    ),
                )
                continue
            actual_value = self.values[key]
            if actual_value != expected_value:
                mismatches.append(
                    MeasurementMismatch(
                        key=key,
                        reason="value_mismatch",
                        expected=expected_value,
                        actual=actual_value,
                        hint="Rebuild the image and compare the recipe and source revisions.",
                    ),
                )

        for key, actual_value in sorted(self.values.items()):
            if key in expected:
                continue
            mismatches.append(
                MeasurementMismatch(
                    key=key,
                    reason="unexpected_actual",
                    expected=None,
                    actual=actual_value,
                    hint="Expected set does not include this entry.",
                ),
            )

        return VerificationResult(ok=not mismatches, mismatches=tuple(mismatches))

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "values": dict(sorted(self.values.items())),
        }
