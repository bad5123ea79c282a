"""
Firmware compliance evaluation.

Pure functions: given the BIOS and iDRAC versions a host reported and the
known baselines, decide whether the host is current, needs a maintenance
window, or is not covered at all. Versions are compared as integer tuples so
"2.10.0" is newer than "2.9.3".
"""

import logging
import re
from typing import List, Optional, Tuple

from idrac_discovery.errors import ComplianceError
from idrac_discovery.models import (
    ComplianceSnapshot,
    DellGeneration,
    FirmwareBaseline,
    HostDiscoveryResult,
    Readiness,
)

logger = logging.getLogger(__name__)

CATCH_ALL_MODEL = "*"

_GENERATION_ORDER = [
    DellGeneration.G11,
    DellGeneration.G12,
    DellGeneration.G13,
    DellGeneration.G14,
    DellGeneration.G15,
    DellGeneration.G16,
]


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Parse a firmware version into a tuple of integers.

    Every run of digits is one component: '2.70.70.70' -> (2, 70, 70, 70),
    'A12' -> (12,), '1.2.3 (Build 4)' -> (1, 2, 3, 4).

    Raises:
        ComplianceError if the string contains no digits.
    """
    parts = re.findall(r"\d+", version or "")
    if not parts:
        raise ComplianceError(f"Cannot parse firmware version {version!r}")
    return tuple(int(p) for p in parts)


def compare_versions(left: str, right: str) -> int:
    """Return -1, 0 or 1; shorter versions are padded with zeros."""
    a = parse_version(left)
    b = parse_version(right)
    width = max(len(a), len(b))
    a = a + (0,) * (width - len(a))
    b = b + (0,) * (width - len(b))
    return (a > b) - (a < b)


def is_outdated(current: Optional[str], baseline: Optional[str]) -> bool:
    """A missing current or baseline version is never outdated."""
    if not current or not baseline:
        return False
    return compare_versions(current, baseline) < 0


def find_baseline(model: Optional[str], baselines: List[FirmwareBaseline]) -> Optional[FirmwareBaseline]:
    """
    Baseline for a model: the longest case-insensitive prefix match of the
    model string, else the catch-all '*' row.
    """
    normalized = (model or "").strip().lower()
    best = None
    for baseline in baselines:
        key = baseline.model.strip().lower()
        if key == CATCH_ALL_MODEL or not normalized:
            continue
        if normalized.startswith(key) and (best is None or len(key) > len(best.model.strip())):
            best = baseline
    if best is not None:
        return best
    return next((b for b in baselines if b.model.strip() == CATCH_ALL_MODEL), None)


def generation_below(generation: Optional[DellGeneration], minimum: Optional[DellGeneration]) -> bool:
    if not minimum or minimum == DellGeneration.UNKNOWN:
        return False
    if not generation or generation == DellGeneration.UNKNOWN:
        return False
    return _GENERATION_ORDER.index(generation) < _GENERATION_ORDER.index(minimum)


def evaluate(
    bios_version: Optional[str],
    idrac_version: Optional[str],
    known_baselines: List[FirmwareBaseline],
    model: Optional[str] = None,
    generation: Optional[DellGeneration] = None,
) -> ComplianceSnapshot:
    """
    Build the compliance snapshot for one host.

    Readiness:
        not_supported         no baseline covers the model, the baseline is
                              marked unsupported, or the host is older than
                              the baseline's minimum generation
        maintenance_required  BIOS or iDRAC is behind the baseline
        ready                 both are current

    Raises:
        ComplianceError if a version cannot be parsed.
    """
    generation = generation or DellGeneration.UNKNOWN
    baseline = find_baseline(model, known_baselines)
    if baseline is None:
        return ComplianceSnapshot(readiness=Readiness.NOT_SUPPORTED, generation=generation)

    snapshot = ComplianceSnapshot(generation=generation, baseline_model=baseline.model)
    if not baseline.supported or generation_below(generation, baseline.minimum_generation):
        snapshot.readiness = Readiness.NOT_SUPPORTED
        return snapshot

    snapshot.bios_outdated = is_outdated(bios_version, baseline.bios_version)
    snapshot.idrac_outdated = is_outdated(idrac_version, baseline.idrac_version)
    snapshot.available_update_count = int(snapshot.bios_outdated) + int(snapshot.idrac_outdated)
    if snapshot.available_update_count:
        snapshot.readiness = Readiness.MAINTENANCE_REQUIRED
    else:
        snapshot.readiness = Readiness.READY
    return snapshot


def evaluate_result(result: HostDiscoveryResult, known_baselines: List[FirmwareBaseline]) -> ComplianceSnapshot:
    """Evaluate a discovered host using the facts its probes reported."""
    return evaluate(
        result.bios_version,
        result.idrac_version,
        known_baselines,
        model=result.model,
        generation=result.generation,
    )
