"""SQLite-backed spatial signal store for ARGOS."""

import json
import logging
import math
import sqlite3
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from src.backend.core.exceptions import DataCorruptionError, StoreIOError
from src.backend.models.schemas import (
    Bounds,
    CleanupResult,
    DeviceRecord,
    RelationshipRecord,
    SignalRecord,
    SpatialQuery,
    StoreStatistics,
)
from src.backend.utils.geo import degree_offsets, haversine_distance
from src.backend.utils.logging import PerformanceLogger

logger = logging.getLogger(__name__)

# 1e-4 degree cells, about 11 m of latitude
DEFAULT_GRID_SCALE = 10000
NEARBY_DEFAULT_WINDOW_S = 300.0
RELATIONSHIP_LIMIT = 1000

WIFI_BANDS_MHZ = ((2400.0, 2500.0), (5150.0, 5850.0))
CELLULAR_BANDS_MHZ = ((800.0, 900.0), (1800.0, 1900.0))


def signal_type_of(metadata: dict[str, Any]) -> str:
    return str(
        metadata.get("signal_type") or metadata.get("signalType") or metadata.get("type") or "unknown"
    )


def derive_device_id(frequency_mhz: float, power: float, metadata: dict[str, Any]) -> str:
    """
    Approximate emitter fingerprint: signal type, whole MHz and 10 dB power decile.

    Distinct emitters sharing all three buckets collapse into one device.
    """
    decile = math.floor(power / 10) * 10
    return f"{signal_type_of(metadata)}_{math.floor(frequency_mhz)}_{decile}"


def detect_device_type(frequency_mhz: float, metadata: dict[str, Any]) -> str:
    if signal_type_of(metadata).lower() == "bluetooth":
        return "bluetooth"
    if any(low <= frequency_mhz <= high for low, high in WIFI_BANDS_MHZ):
        return "wifi"
    if any(low <= frequency_mhz <= high for low, high in CELLULAR_BANDS_MHZ):
        return "cellular"
    return "unknown"


@dataclass
class _DeviceDelta:
    """In-memory fold of one batch's signals for a single device."""

    type: str
    count: int
    power_sum: float
    freq_min: float
    freq_max: float
    first_seen: float
    last_seen: float
    last_lat: float
    last_lon: float

    @classmethod
    def from_signal(cls, signal: SignalRecord, device_type: str) -> "_DeviceDelta":
        return cls(
            type=device_type,
            count=1,
            power_sum=signal.power,
            freq_min=signal.frequency,
            freq_max=signal.frequency,
            first_seen=signal.timestamp,
            last_seen=signal.timestamp,
            last_lat=signal.lat,
            last_lon=signal.lon,
        )

    def add(self, signal: SignalRecord) -> None:
        self.count += 1
        self.power_sum += signal.power
        self.freq_min = min(self.freq_min, signal.frequency)
        self.freq_max = max(self.freq_max, signal.frequency)
        self.first_seen = min(self.first_seen, signal.timestamp)
        if signal.timestamp >= self.last_seen:
            self.last_seen = signal.timestamp
            self.last_lat = signal.lat
            self.last_lon = signal.lon


class SpatialSignalStore:
    """
    Signal observations with per-device rolling aggregates and a grid index.

    Every public call runs in its own transaction and either applies fully
    or raises StoreIOError. Connections are opened per call, so one
    instance may be shared across threads.
    """

    def __init__(
        self,
        db_path: str | Path = "data/argos.db",
        grid_scale: int = DEFAULT_GRID_SCALE,
        enable_wal: bool = True,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file
            grid_scale: Grid cells per degree
            enable_wal: Use the write-ahead log journal
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.grid_scale = grid_scale
        self.enable_wal = enable_wal
        self._closed = False
        self._perf = PerformanceLogger(logger)
        self._init_database()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreIOError("Signal store is closed", {"db_path": str(self.db_path)})
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str, write: bool = False) -> Iterator[sqlite3.Connection]:
        """Run one public call atomically, mapping sqlite errors to StoreIOError."""
        conn = None
        try:
            conn = self._connect()
            if write:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            if conn is not None:
                conn.rollback()
            logger.error(f"Signal store {operation} failed: {e}")
            raise StoreIOError(f"{operation} failed: {e}", {"db_path": str(self.db_path)}) from e
        except BaseException:
            if conn is not None:
                conn.rollback()
            raise
        finally:
            if conn is not None:
                conn.close()

    def _init_database(self) -> None:
        """Initialize database tables if they don't exist."""
        with self._transaction("initialize") as conn:
            if self.enable_wal:
                conn.execute("PRAGMA journal_mode=WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS signals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    signal_id TEXT UNIQUE NOT NULL,
                    device_id TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    altitude REAL DEFAULT 0,
                    grid_lat INTEGER NOT NULL,
                    grid_lon INTEGER NOT NULL,
                    power REAL NOT NULL,
                    frequency REAL NOT NULL,
                    source TEXT NOT NULL,
                    metadata TEXT
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_signals_grid ON signals(grid_lat, grid_lon)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_signals_timestamp ON signals(timestamp)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_signals_device ON signals(device_id)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS devices (
                    device_id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    first_seen REAL NOT NULL,
                    last_seen REAL NOT NULL,
                    avg_power REAL NOT NULL,
                    freq_min REAL NOT NULL,
                    freq_max REAL NOT NULL,
                    signal_count INTEGER NOT NULL,
                    last_lat REAL NOT NULL,
                    last_lon REAL NOT NULL
                )
            """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_devices_last_seen ON devices(last_seen)")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS relationships (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_device_id TEXT NOT NULL,
                    target_device_id TEXT NOT NULL,
                    relationship_type TEXT NOT NULL,
                    strength REAL NOT NULL,
                    first_seen REAL NOT NULL,
                    last_seen REAL NOT NULL,
                    UNIQUE(source_device_id, target_device_id, relationship_type)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_relationships_last_seen "
                "ON relationships(last_seen)"
            )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def grid_cell(self, lat: float, lon: float) -> tuple[int, int]:
        return math.floor(lat * self.grid_scale), math.floor(lon * self.grid_scale)

    def prepare_signal(self, signal: SignalRecord) -> SignalRecord:
        """Validate ``signal`` and fill in device id and grid cell."""
        values = (signal.timestamp, signal.lat, signal.lon, signal.power, signal.frequency)
        if not signal.id or not all(
            isinstance(v, int | float) and math.isfinite(v) for v in values
        ):
            raise DataCorruptionError("Signal record has missing or non-finite fields", {"id": signal.id})
        if not (-90 <= signal.lat <= 90 and -180 <= signal.lon <= 180):
            raise DataCorruptionError(
                "Signal position out of range", {"lat": signal.lat, "lon": signal.lon}
            )

        grid_lat, grid_lon = self.grid_cell(signal.lat, signal.lon)
        return replace(
            signal,
            device_id=signal.device_id
            or derive_device_id(signal.frequency, signal.power, signal.metadata),
            grid_lat=grid_lat,
            grid_lon=grid_lon,
        )

    def store_signal(self, signal: SignalRecord) -> SignalRecord:
        """Persist one signal and fold it into its device. Returns the stored form."""
        prepared = self.prepare_signal(signal)
        self._write_batch([prepared])
        return prepared

    def store_signals_batch(self, signals: Iterable[SignalRecord]) -> int:
        """
        Persist signals in one transaction.

        Device updates are folded in memory first, so each device is written
        once per batch. Signals whose id already exists are ignored.

        Returns:
            Number of signals inserted
        """
        prepared = [self.prepare_signal(s) for s in signals]
        if not prepared:
            return 0
        with self._perf.timed("store_signals_batch", size=len(prepared)):
            return self._write_batch(prepared)

    def _write_batch(self, signals: list[SignalRecord]) -> int:
        deltas: dict[str, _DeviceDelta] = {}
        inserted = 0

        with self._transaction("store signals", write=True) as conn:
            for signal in signals:
                cursor = conn.execute(
                    """
                    INSERT OR IGNORE INTO signals
                    (signal_id, device_id, timestamp, latitude, longitude, altitude,
                     grid_lat, grid_lon, power, frequency, source, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        signal.id,
                        signal.device_id,
                        signal.timestamp,
                        signal.lat,
                        signal.lon,
                        signal.altitude,
                        signal.grid_lat,
                        signal.grid_lon,
                        signal.power,
                        signal.frequency,
                        signal.source,
                        json.dumps(signal.metadata),
                    ),
                )
                if cursor.rowcount != 1:
                    logger.debug(f"Ignoring duplicate signal {signal.id}")
                    continue

                inserted += 1
                assert signal.device_id is not None
                delta = deltas.get(signal.device_id)
                if delta is None:
                    deltas[signal.device_id] = _DeviceDelta.from_signal(
                        signal, detect_device_type(signal.frequency, signal.metadata)
                    )
                else:
                    delta.add(signal)

            for device_id, delta in deltas.items():
                self._apply_device_delta(conn, device_id, delta)

        return inserted

    @staticmethod
    def _apply_device_delta(conn: sqlite3.Connection, device_id: str, delta: _DeviceDelta) -> None:
        row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        if row is None:
            conn.execute(
                """
                INSERT INTO devices
                (device_id, type, first_seen, last_seen, avg_power, freq_min, freq_max,
                 signal_count, last_lat, last_lon)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    device_id,
                    delta.type,
                    delta.first_seen,
                    delta.last_seen,
                    delta.power_sum / delta.count,
                    delta.freq_min,
                    delta.freq_max,
                    delta.count,
                    delta.last_lat,
                    delta.last_lon,
                ),
            )
            return

        count = row["signal_count"]
        # Incremental mean over the whole batch: (avg*n + sum) / (n + k)
        avg_power = (row["avg_power"] * count + delta.power_sum) / (count + delta.count)
        newer = delta.last_seen >= row["last_seen"]
        conn.execute(
            """
            UPDATE devices
            SET first_seen=?, last_seen=?, avg_power=?, freq_min=?, freq_max=?,
                signal_count=?, last_lat=?, last_lon=?
            WHERE device_id=?
        """,
            (
                min(row["first_seen"], delta.first_seen),
                delta.last_seen if newer else row["last_seen"],
                avg_power,
                min(row["freq_min"], delta.freq_min),
                max(row["freq_max"], delta.freq_max),
                count + delta.count,
                delta.last_lat if newer else row["last_lat"],
                delta.last_lon if newer else row["last_lon"],
                device_id,
            ),
        )

    def store_relationships(self, edges: Iterable[RelationshipRecord]) -> int:
        """Upsert co-occurrence edges. Returns the number of edges written."""
        edges = list(edges)
        for edge in edges:
            if not edge.source_device_id or not edge.target_device_id:
                raise DataCorruptionError("Relationship is missing a device id")

        with self._transaction("store relationships", write=True) as conn:
            for edge in edges:
                conn.execute(
                    """
                    INSERT INTO relationships
                    (source_device_id, target_device_id, relationship_type, strength,
                     first_seen, last_seen)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(source_device_id, target_device_id, relationship_type)
                    DO UPDATE SET
                        strength = excluded.strength,
                        first_seen = MIN(first_seen, excluded.first_seen),
                        last_seen = MAX(last_seen, excluded.last_seen)
                """,
                    (
                        edge.source_device_id,
                        edge.target_device_id,
                        edge.type,
                        edge.strength,
                        edge.first_seen,
                        edge.last_seen,
                    ),
                )
        return len(edges)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _grid_window(self, min_lat: float, max_lat: float, min_lon: float, max_lon: float) -> tuple:
        low_lat, low_lon = self.grid_cell(min_lat, min_lon)
        high_lat, high_lon = self.grid_cell(max_lat, max_lon)
        return low_lat, high_lat, low_lon, high_lon

    def find_signals_in_radius(self, query: SpatialQuery) -> list[SignalRecord]:
        """
        Signals within ``query.radius_m`` of the query point, newest first.

        Candidates come from every grid cell touching the radius bounding
        box and are then filtered by exact great-circle distance.
        """
        if query.radius_m < 0 or query.limit <= 0:
            return []

        lat_range, lon_range = degree_offsets(query.lat, query.radius_m)
        sql = """
            SELECT * FROM signals
            WHERE grid_lat BETWEEN ? AND ? AND grid_lon BETWEEN ? AND ?
        """
        params: list[Any] = list(
            self._grid_window(
                query.lat - lat_range,
                query.lat + lat_range,
                query.lon - lon_range,
                query.lon + lon_range,
            )
        )
        if query.start_time is not None:
            sql += " AND timestamp >= ?"
            params.append(query.start_time)
        if query.end_time is not None:
            sql += " AND timestamp <= ?"
            params.append(query.end_time)
        sql += " ORDER BY timestamp DESC, id DESC"

        results: list[SignalRecord] = []
        with self._perf.timed("find_signals_in_radius", radius_m=query.radius_m):
            with self._transaction("radius query") as conn:
                for row in conn.execute(sql, params):
                    distance = haversine_distance(
                        query.lat, query.lon, row["latitude"], row["longitude"]
                    )
                    if distance <= query.radius_m:
                        results.append(self._row_to_signal(row))
                        if len(results) >= query.limit:
                            break
        return results

    def get_devices_in_area(self, bounds: Bounds, since: float | None = None) -> list[DeviceRecord]:
        """Devices with at least one signal inside ``bounds``, most recent first."""
        sql = """
            SELECT DISTINCT d.* FROM devices d
            JOIN signals s ON s.device_id = d.device_id
            WHERE s.grid_lat BETWEEN ? AND ? AND s.grid_lon BETWEEN ? AND ?
              AND s.latitude BETWEEN ? AND ? AND s.longitude BETWEEN ? AND ?
        """
        params: list[Any] = [
            *self._grid_window(bounds.min_lat, bounds.max_lat, bounds.min_lon, bounds.max_lon),
            bounds.min_lat,
            bounds.max_lat,
            bounds.min_lon,
            bounds.max_lon,
        ]
        if since is not None:
            sql += " AND s.timestamp >= ?"
            params.append(since)
        sql += " ORDER BY d.last_seen DESC"

        with self._transaction("area query") as conn:
            return [self._row_to_device(row) for row in conn.execute(sql, params)]

    def find_devices_nearby(self, query: SpatialQuery) -> list[DeviceRecord]:
        """Devices heard within the query radius, by default in the last 5 minutes."""
        if query.start_time is None:
            query = replace(query, start_time=time.time() - NEARBY_DEFAULT_WINDOW_S)
        device_ids: list[str] = []
        for signal in self.find_signals_in_radius(replace(query, limit=max(query.limit, 10000))):
            if signal.device_id not in device_ids:
                device_ids.append(signal.device_id)  # type: ignore[arg-type]
        devices = {d.id: d for d in self.get_devices(device_ids)}
        return [devices[i] for i in device_ids if i in devices][: query.limit]

    def get_device(self, device_id: str) -> DeviceRecord | None:
        devices = self.get_devices([device_id])
        return devices[0] if devices else None

    def get_devices(self, device_ids: list[str]) -> list[DeviceRecord]:
        if not device_ids:
            return []
        placeholders = ",".join("?" for _ in device_ids)
        with self._transaction("device lookup") as conn:
            rows = conn.execute(
                f"SELECT * FROM devices WHERE device_id IN ({placeholders})", device_ids
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    def get_relationships(self, device_ids: list[str] | None = None) -> list[RelationshipRecord]:
        """Most recent relationships, optionally touching ``device_ids``."""
        sql = "SELECT * FROM relationships"
        params: list[Any] = []
        if device_ids:
            placeholders = ",".join("?" for _ in device_ids)
            sql += (
                f" WHERE source_device_id IN ({placeholders})"
                f" OR target_device_id IN ({placeholders})"
            )
            params = [*device_ids, *device_ids]
        sql += f" ORDER BY last_seen DESC LIMIT {RELATIONSHIP_LIMIT}"

        with self._transaction("relationship query") as conn:
            return [self._row_to_relationship(row) for row in conn.execute(sql, params)]

    def get_statistics(
        self, time_window_s: float = 3600.0, bounds: Bounds | None = None, now: float | None = None
    ) -> StoreStatistics:
        """Aggregate figures over signals newer than ``time_window_s``."""
        since = (time.time() if now is None else now) - time_window_s
        where = "WHERE timestamp >= ?"
        params: list[Any] = [since]
        if bounds is not None:
            where += " AND latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?"
            params += [bounds.min_lat, bounds.max_lat, bounds.min_lon, bounds.max_lon]

        with self._transaction("statistics") as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total, COUNT(DISTINCT device_id) AS devices,
                       AVG(power) AS avg_power, MIN(power) AS min_power,
                       MAX(power) AS max_power, MIN(frequency) AS min_freq,
                       MAX(frequency) AS max_freq
                FROM signals {where}
            """,
                params,
            ).fetchone()
            bands = [
                r[0]
                for r in conn.execute(
                    f"SELECT DISTINCT ROUND(frequency / 100.0) * 100 AS band FROM signals {where} "
                    "ORDER BY band",
                    params,
                )
            ]
            relationship_count = conn.execute(
                "SELECT COUNT(*) FROM relationships WHERE last_seen >= ?", (since,)
            ).fetchone()[0]

        return StoreStatistics(
            time_window_s=time_window_s,
            total_signals=row["total"],
            unique_devices=row["devices"],
            avg_power=row["avg_power"],
            min_power=row["min_power"],
            max_power=row["max_power"],
            min_frequency=row["min_freq"],
            max_frequency=row["max_freq"],
            frequency_bands=bands,
            relationship_count=relationship_count,
        )

    def count_signals(self) -> int:
        with self._transaction("count") as conn:
            return conn.execute("SELECT COUNT(*) FROM signals").fetchone()[0]

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup_old_data(
        self, max_age_s: float, source: str | None = None, now: float | None = None
    ) -> CleanupResult:
        """
        Delete signals older than ``max_age_s``.

        Devices that lost signals are re-folded from what remains, devices
        left without signals are removed, and so are relationships pointing
        at removed devices.
        """
        cutoff = (time.time() if now is None else now) - max_age_s
        where = "timestamp < ?"
        params: list[Any] = [cutoff]
        if source is not None:
            where += " AND source = ?"
            params.append(source)

        result = CleanupResult()
        with self._transaction("cleanup", write=True) as conn:
            affected = [
                r[0]
                for r in conn.execute(f"SELECT DISTINCT device_id FROM signals WHERE {where}", params)
            ]
            result.signals_deleted = conn.execute(f"DELETE FROM signals WHERE {where}", params).rowcount

            for device_id in affected:
                if self._refold_device(conn, device_id):
                    result.devices_refreshed += 1
                else:
                    result.devices_deleted += 1

            result.relationships_deleted = conn.execute(
                """
                DELETE FROM relationships
                WHERE source_device_id NOT IN (SELECT device_id FROM devices)
                   OR target_device_id NOT IN (SELECT device_id FROM devices)
            """
            ).rowcount

        if result.signals_deleted:
            logger.info(
                f"Retention removed {result.signals_deleted} signals, "
                f"{result.devices_deleted} devices, {result.relationships_deleted} relationships"
            )
        return result

    @staticmethod
    def _refold_device(conn: sqlite3.Connection, device_id: str) -> bool:
        """Recompute a device from its remaining signals. False if none remain."""
        stats = conn.execute(
            """
            SELECT COUNT(*) AS n, AVG(power) AS avg_power, MIN(frequency) AS freq_min,
                   MAX(frequency) AS freq_max, MIN(timestamp) AS first_seen
            FROM signals WHERE device_id = ?
        """,
            (device_id,),
        ).fetchone()
        if stats["n"] == 0:
            conn.execute("DELETE FROM devices WHERE device_id = ?", (device_id,))
            return False

        latest = conn.execute(
            """
            SELECT timestamp, latitude, longitude FROM signals WHERE device_id = ?
            ORDER BY timestamp DESC, id DESC LIMIT 1
        """,
            (device_id,),
        ).fetchone()
        conn.execute(
            """
            UPDATE devices
            SET first_seen=?, last_seen=?, avg_power=?, freq_min=?, freq_max=?,
                signal_count=?, last_lat=?, last_lon=?
            WHERE device_id=?
        """,
            (
                stats["first_seen"],
                latest["timestamp"],
                stats["avg_power"],
                stats["freq_min"],
                stats["freq_max"],
                stats["n"],
                latest["latitude"],
                latest["longitude"],
                device_id,
            ),
        )
        return True

    def vacuum(self) -> None:
        conn = self._connect()
        try:
            conn.isolation_level = None
            conn.execute("VACUUM")
        except sqlite3.Error as e:
            logger.error(f"Signal store vacuum failed: {e}")
            raise StoreIOError(f"vacuum failed: {e}") from e
        finally:
            conn.close()

    def close(self) -> None:
        self._closed = True

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_signal(row: sqlite3.Row) -> SignalRecord:
        return SignalRecord(
            id=row["signal_id"],
            timestamp=row["timestamp"],
            lat=row["latitude"],
            lon=row["longitude"],
            power=row["power"],
            frequency=row["frequency"],
            source=row["source"],
            altitude=row["altitude"] or 0.0,
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            device_id=row["device_id"],
            grid_lat=row["grid_lat"],
            grid_lon=row["grid_lon"],
        )

    @staticmethod
    def _row_to_device(row: sqlite3.Row) -> DeviceRecord:
        return DeviceRecord(
            id=row["device_id"],
            type=row["type"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            avg_power=row["avg_power"],
            freq_min=row["freq_min"],
            freq_max=row["freq_max"],
            signal_count=row["signal_count"],
            last_lat=row["last_lat"],
            last_lon=row["last_lon"],
        )

    @staticmethod
    def _row_to_relationship(row: sqlite3.Row) -> RelationshipRecord:
        return RelationshipRecord(
            id=row["id"],
            source_device_id=row["source_device_id"],
            target_device_id=row["target_device_id"],
            type=row["relationship_type"],
            strength=row["strength"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
        )
