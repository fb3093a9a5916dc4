from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

from procurement.config import Settings, settings

logger = logging.getLogger(__name__)


class MigrationPhase(str, Enum):
    PHASE_0_LEGACY_ONLY = 'PHASE_0_LEGACY_ONLY'
    PHASE_1_DUAL_WRITE_SAFE = 'PHASE_1_DUAL_WRITE_SAFE'
    PHASE_2_SAFE_MODE_DISABLED = 'PHASE_2_SAFE_MODE_DISABLED'
    PHASE_3_UNIFIED_PRIMARY = 'PHASE_3_UNIFIED_PRIMARY'
    PHASE_4_UNIFIED_ONLY = 'PHASE_4_UNIFIED_ONLY'
    UNKNOWN = 'UNKNOWN'


class WriteMode(str, Enum):
    LEGACY_ONLY = 'LEGACY_ONLY'
    DUAL = 'DUAL'
    UNIFIED_ONLY = 'UNIFIED_ONLY'


_PHASE_TABLE: dict[tuple[bool, bool, bool], MigrationPhase] = {
    (True, False, False): MigrationPhase.PHASE_0_LEGACY_ONLY,
    (True, True, False): MigrationPhase.PHASE_1_DUAL_WRITE_SAFE,
    (False, True, False): MigrationPhase.PHASE_2_SAFE_MODE_DISABLED,
    (False, True, True): MigrationPhase.PHASE_3_UNIFIED_PRIMARY,
    (False, False, True): MigrationPhase.PHASE_4_UNIFIED_ONLY,
}


def derive_phase(safe_mode: bool, dual_write: bool, read_unified: bool) -> MigrationPhase:
    return _PHASE_TABLE.get((bool(safe_mode), bool(dual_write), bool(read_unified)), MigrationPhase.UNKNOWN)


def parse_safe_mode(raw: str | None) -> bool:
    # Safe mode can only be switched off explicitly.
    return raw != 'false'


def parse_enabled(raw: str | None) -> bool:
    return raw == 'true'


@dataclass(frozen=True)
class MigrationFlagState:
    safe_mode: bool = True
    dual_write: bool = False
    read_unified: bool = False

    @property
    def phase(self) -> MigrationPhase:
        return derive_phase(self.safe_mode, self.dual_write, self.read_unified)

    @property
    def write_mode(self) -> WriteMode:
        phase = self.phase
        if phase == MigrationPhase.PHASE_0_LEGACY_ONLY:
            return WriteMode.LEGACY_ONLY
        if phase == MigrationPhase.PHASE_4_UNIFIED_ONLY:
            return WriteMode.UNIFIED_ONLY
        # Phases 1-3 dual-write. An unrecognised combination also keeps both views current.
        return WriteMode.DUAL

    @property
    def writes_legacy(self) -> bool:
        return self.write_mode != WriteMode.UNIFIED_ONLY

    @property
    def writes_unified(self) -> bool:
        return self.write_mode != WriteMode.LEGACY_ONLY

    @property
    def prefer_unified_reads(self) -> bool:
        return self.phase in (MigrationPhase.PHASE_3_UNIFIED_PRIMARY, MigrationPhase.PHASE_4_UNIFIED_ONLY)

    def as_dict(self) -> dict:
        return {
            'safe_mode': self.safe_mode,
            'dual_write': self.dual_write,
            'read_unified': self.read_unified,
            'phase': self.phase.value,
            'write_mode': self.write_mode.value,
            'prefer_unified_reads': self.prefer_unified_reads,
        }


def flags_from_settings(source: Settings) -> MigrationFlagState:
    return MigrationFlagState(
        safe_mode=parse_safe_mode(source.safe_mode),
        dual_write=parse_enabled(source.dual_write_enabled),
        read_unified=parse_enabled(source.read_from_unified),
    )


@lru_cache(maxsize=1)
def get_migration_flags() -> MigrationFlagState:
    state = flags_from_settings(settings)
    if state.phase == MigrationPhase.UNKNOWN:
        logger.warning(
            'Unrecognised migration flag combination safe_mode=%s dual_write=%s read_unified=%s; writers will dual-write',
            state.safe_mode,
            state.dual_write,
            state.read_unified,
        )
    else:
        logger.info('Migration phase resolved: %s', state.phase.value)
    return state
