"""
State store: latest tracking state per participant, participant profiles
and race results, with best-effort JSON snapshotting.
"""

import asyncio
import copy
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import config

logger = logging.getLogger('StateStore')

STATUS_ACTIVE = 'active'
STATUS_INACTIVE = 'inactive'
STATUS_SOS = 'sos'
STATUS_WAITING = 'waiting'
STATUSES = (STATUS_ACTIVE, STATUS_INACTIVE, STATUS_SOS, STATUS_WAITING)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class Position:
    latitude: float
    longitude: float
    accuracy: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Position':
        """Build from a wire/persisted dict. Accepts lat/lng short keys."""
        latitude = data.get('latitude', data.get('lat'))
        longitude = data.get('longitude', data.get('lng', data.get('lon')))
        if latitude is None or longitude is None:
            raise ValueError('position needs latitude and longitude')
        accuracy = data.get('accuracy')
        return cls(
            latitude=float(latitude),
            longitude=float(longitude),
            accuracy=float(accuracy) if accuracy is not None else None,
        )


@dataclass
class TrackingState:
    """Latest known live status of one participant."""
    id: str
    name: Optional[str] = None
    sailNumber: Optional[str] = None
    color: Optional[str] = None
    position: Optional[Position] = None
    speed: float = 0.0
    distance: float = 0.0
    status: str = STATUS_WAITING
    active: bool = False
    sos: bool = False
    sosTimestamp: Optional[str] = None
    sosMessage: Optional[str] = None
    lastUpdate: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackingState':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        if isinstance(values.get('position'), dict):
            values['position'] = Position.from_dict(values['position'])
        return cls(**values)


@dataclass
class ParticipantProfile:
    """Durable registration record for a participant."""
    id: Optional[str] = None
    name: str = ''
    sailNumber: str = ''
    email: Optional[str] = None
    phone: Optional[str] = None
    emergencyContact: Optional[str] = None
    trackingColor: Optional[str] = None
    registrationDate: Optional[str] = None
    lastUpdated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ParticipantProfile':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class RaceResultEntry:
    participantId: str
    position: int
    time: Optional[str] = None


TRACKING_FIELDS = {f.name for f in fields(TrackingState)} - {'id'}
PROFILE_FIELDS = {f.name for f in fields(ParticipantProfile)} - {'id', 'registrationDate', 'lastUpdated'}


def generate_participant_id() -> str:
    return f"p_{int(time.time() * 1000)}_{str(uuid.uuid4())[:4]}"


# ============================================================================
# STATE STORE
# ============================================================================

class StateStore:
    """
    Owns all participant state. The relay only reaches it through these
    methods, so every mutation happens on the event loop thread.
    Unknown participant ids are always accepted.
    """

    def __init__(self, data_dir: Optional[Path] = None, clock: Callable[[], str] = utc_now_iso):
        self.data_dir = Path(data_dir) if data_dir is not None else config.DATA_DIR
        self.tracking_file = self.data_dir / config.TRACKING_FILE
        self.participants_file = self.data_dir / config.PARTICIPANTS_FILE
        self._clock = clock
        self._tracking: Dict[str, TrackingState] = {}
        self._profiles: Dict[str, ParticipantProfile] = {}
        self._race_results: Dict[str, List[RaceResultEntry]] = {}
        self._colors_assigned = 0
        self._write_lock = threading.Lock()
        self._snapshot_seq = 0
        self._written_seq = 0

    # =========================================================================
    # TRACKING STATE
    # =========================================================================

    def upsert_tracking(self, participant_id, values: Dict[str, Any]) -> TrackingState:
        """Merge values into the participant's entry, creating it if needed.

        Setting a status other than 'sos' clears the SOS flag.
        """
        participant_id = str(participant_id)
        state = self._tracking.get(participant_id)
        if state is None:
            state = TrackingState(id=participant_id)
            self._tracking[participant_id] = state
            logger.info(f"🆕 Tracking participant {participant_id}")

        for key, value in values.items():
            if key not in TRACKING_FIELDS:
                continue
            if key == 'position' and isinstance(value, dict):
                value = Position.from_dict(value)
            setattr(state, key, value)

        if 'status' in values:
            if state.status == STATUS_SOS:
                state.sos = True
                state.sosTimestamp = state.sosTimestamp or self._clock()
            else:
                state.sos = False
                state.sosTimestamp = None
                state.sosMessage = None
            if 'active' not in values:
                state.active = state.status in (STATUS_ACTIVE, STATUS_SOS)

        state.lastUpdate = self._clock()
        return copy.deepcopy(state)

    def mark_sos(self, participant_id, position: Optional[Position] = None,
                 message: Optional[str] = None) -> TrackingState:
        participant_id = str(participant_id)
        state = self._tracking.get(participant_id)
        if state is None:
            state = TrackingState(id=participant_id)
            self._tracking[participant_id] = state

        now = self._clock()
        state.status = STATUS_SOS
        state.sos = True
        state.active = True
        state.sosTimestamp = now
        state.lastUpdate = now
        if position is not None:
            state.position = Position.from_dict(position) if isinstance(position, dict) else position
        if message is not None:
            state.sosMessage = message

        logger.warning(f"🆘 SOS stored for participant {participant_id}")
        return copy.deepcopy(state)

    def get_tracking(self, participant_id) -> Optional[TrackingState]:
        state = self._tracking.get(str(participant_id))
        return copy.deepcopy(state) if state else None

    def snapshot_all(self) -> Dict[str, Dict[str, Any]]:
        return {pid: state.to_dict() for pid, state in self._tracking.items()}

    def active_count(self) -> int:
        return sum(1 for state in self._tracking.values() if state.active)

    # =========================================================================
    # PROFILES
    # =========================================================================

    def upsert_profile(self, profile) -> ParticipantProfile:
        """Create or replace a profile by id.

        registrationDate is kept from the first creation; lastUpdated is
        stamped on every call. Missing id and color are assigned here.
        """
        if isinstance(profile, dict):
            profile = ParticipantProfile.from_dict(profile)
        else:
            profile = copy.deepcopy(profile)

        if not profile.id:
            profile.id = generate_participant_id()
        profile.id = str(profile.id)

        existing = self._profiles.get(profile.id)
        now = self._clock()
        if existing is None:
            profile.registrationDate = now
            logger.info(f"📝 Registered participant {profile.id} ({profile.name or '?'} / {profile.sailNumber or '?'})")
        else:
            profile.registrationDate = existing.registrationDate
        if not profile.trackingColor:
            profile.trackingColor = existing.trackingColor if existing and existing.trackingColor else self._next_color()
        profile.lastUpdated = now

        self._profiles[profile.id] = profile
        return copy.deepcopy(profile)

    def update_profile(self, participant_id, values: Dict[str, Any]) -> ParticipantProfile:
        """Merge values into an existing profile (or a new one) and store it."""
        participant_id = str(participant_id)
        existing = self._profiles.get(participant_id)
        merged = existing.to_dict() if existing else {'id': participant_id}
        merged.update({k: v for k, v in values.items() if k in PROFILE_FIELDS})
        return self.upsert_profile(merged)

    def find_profile(self, participant_id) -> Optional[ParticipantProfile]:
        profile = self._profiles.get(str(participant_id))
        return copy.deepcopy(profile) if profile else None

    def delete_profile(self, participant_id) -> bool:
        participant_id = str(participant_id)
        removed = self._profiles.pop(participant_id, None)
        self._tracking.pop(participant_id, None)
        if removed:
            logger.info(f"🗑️ Deleted participant {participant_id}")
        return removed is not None

    def all_profiles(self) -> List[Dict[str, Any]]:
        # dicts keep insertion order, which is registration order
        return [p.to_dict() for p in self._profiles.values()]

    def _next_color(self) -> str:
        color = config.TRACKING_COLORS[self._colors_assigned % len(config.TRACKING_COLORS)]
        self._colors_assigned += 1
        return color

    # =========================================================================
    # RACE RESULTS
    # =========================================================================

    def store_race_results(self, races: Dict[str, List[Dict[str, Any]]]) -> Dict[str, List[Dict[str, Any]]]:
        for race_id, entries in races.items():
            self._race_results[str(race_id)] = [
                RaceResultEntry(
                    participantId=str(entry['participantId']),
                    position=int(entry['position']),
                    time=entry.get('time'),
                )
                for entry in entries
            ]
        logger.info(f"🏁 Stored results for {len(races)} race(s)")
        return self.race_results()

    def race_results(self) -> Dict[str, List[Dict[str, Any]]]:
        return {race_id: [asdict(e) for e in entries] for race_id, entries in self._race_results.items()}

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _documents(self) -> Tuple[int, Dict[Path, str]]:
        documents = {
            self.tracking_file: json.dumps(self.snapshot_all(), indent=2),
            self.participants_file: json.dumps(self.all_profiles(), indent=2),
        }
        self._snapshot_seq += 1
        return self._snapshot_seq, documents

    def _write_documents(self, seq: int, documents: Dict[Path, str]) -> bool:
        """Write one snapshot. A snapshot older than the last one written is skipped."""
        try:
            with self._write_lock:
                if seq < self._written_seq:
                    logger.debug(f"Skipped stale snapshot {seq} (already wrote {self._written_seq})")
                    return True
                self.data_dir.mkdir(parents=True, exist_ok=True)
                for path, text in documents.items():
                    tmp_file = path.with_suffix('.tmp')
                    with open(tmp_file, 'w') as f:
                        f.write(text)
                    tmp_file.replace(path)
                self._written_seq = seq
            logger.debug(f"💾 Persisted {len(self._tracking)} tracking entries, {len(self._profiles)} profiles")
            return True
        except OSError as e:
            logger.error(f"❌ Failed to persist state to {self.data_dir}: {e}")
            return False

    def persist(self) -> bool:
        """Write both documents now. Failures are logged, never raised."""
        try:
            seq, documents = self._documents()
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Failed to serialize state: {e}")
            return False
        return self._write_documents(seq, documents)

    async def persist_async(self) -> bool:
        """Snapshot on the loop, write in the default executor."""
        try:
            seq, documents = self._documents()
        except (TypeError, ValueError) as e:
            logger.error(f"❌ Failed to serialize state: {e}")
            return False
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._write_documents, seq, documents)

    def load(self) -> None:
        """Restore both documents. Missing or corrupt files leave that map empty."""
        tracking = self._read_json(self.tracking_file, dict)
        for pid, data in (tracking or {}).items():
            try:
                self._tracking[str(pid)] = TrackingState.from_dict({**data, 'id': str(pid)})
            except (TypeError, ValueError) as e:
                logger.warning(f"⚠️ Skipping unreadable tracking entry {pid}: {e}")

        profiles = self._read_json(self.participants_file, list)
        for data in profiles or []:
            try:
                profile = ParticipantProfile.from_dict(data)
            except TypeError as e:
                logger.warning(f"⚠️ Skipping unreadable profile: {e}")
                continue
            if profile.id:
                self._profiles[str(profile.id)] = profile
        self._colors_assigned = len(self._profiles)

        logger.info(f"📂 Loaded {len(self._tracking)} tracking entries and {len(self._profiles)} profiles from {self.data_dir}")

    @staticmethod
    def _read_json(path: Path, expected: type):
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"❌ Could not read {path}: {e}")
            return None
        if not isinstance(data, expected):
            logger.error(f"❌ Unexpected content in {path}: expected {expected.__name__}")
            return None
        return data
