"""Flight path coverage, hotspot, efficiency and anomaly analysis."""

import math
from collections import Counter, defaultdict
from typing import TYPE_CHECKING, Literal

import numpy as np
from pydantic import BaseModel, Field

from src.backend.core.config import AnalyticsConfig
from src.backend.models.schemas import SpatialQuery
from src.backend.utils.geo import (
    METERS_PER_DEGREE_LAT,
    haversine_distance,
    meters_per_degree_lon,
)
from src.backend.utils.logging import get_logger

if TYPE_CHECKING:
    from src.backend.models.database import SpatialSignalStore

logger = get_logger(__name__)

CoverageQuality = Literal["excellent", "good", "fair", "poor"]
AnomalyType = Literal["signal_spike", "coverage_gap", "altitude_deviation"]
Severity = Literal["low", "medium", "high"]

# Coverage quality thresholds (strictly greater than)
EXCELLENT_SIGNALS = 20
GOOD_SIGNALS = 10
FAIR_SIGNALS = 5

SPIKE_FACTOR = 3.0
SPIKE_HIGH_FACTOR = 5.0
GAP_DISTANCE_M = 200.0
GAP_HIGH_DISTANCE_M = 500.0
ALTITUDE_SIGMA = 2.0
ALTITUDE_HIGH_SIGMA = 3.0

DEFAULT_OPTIMAL_ALTITUDE_M = 50.0
POLYGON_CELL_ESTIMATE = 100
POOR_COVERAGE_FRACTION = 0.2
REDUNDANT_PATH_LIMIT = 20.0
LOW_DETECTION_RATE = 10.0


class Position(BaseModel):
    lat: float
    lon: float
    altitude: float = 0.0


class FlightPoint(BaseModel):
    """One flight telemetry sample."""

    timestamp: float  # Epoch seconds
    lat: float
    lon: float
    altitude: float = 0.0
    heading: float = 0.0
    speed: float = 0.0
    signal_strength: float | None = None
    battery: float | None = Field(default=None, ge=0, le=100)


class CapturedSignal(BaseModel):
    id: str
    frequency: float  # MHz
    power: float


class SignalCapture(BaseModel):
    """Signals heard at one position during the flight."""

    id: str
    timestamp: float
    position: Position
    signals: list[CapturedSignal] = Field(default_factory=list)
    average_power: float = -100.0
    signal_count: int = Field(default=0, ge=0)


class AreaOfInterest(BaseModel):
    id: str
    name: str = ""
    type: Literal["polygon", "circle", "rectangle"]
    coordinates: list[tuple[float, float]] = Field(default_factory=list)  # (lat, lon)
    center: Position | None = None
    radius: float | None = None  # metres
    flight_altitude: float = DEFAULT_OPTIMAL_ALTITUDE_M


class CellBounds(BaseModel):
    min_lat: float
    max_lat: float
    min_lon: float
    max_lon: float


class CoverageCell(BaseModel):
    bounds: CellBounds
    center: Position
    altitudes: list[float] = Field(default_factory=list)
    signal_count: int = 0
    average_power: float = 0.0
    coverage_quality: CoverageQuality = "poor"


class SignalHotspot(BaseModel):
    position: Position
    radius: float
    intensity: float = Field(ge=0, le=1)
    dominant_frequency: float
    device_count: int
    recommended_altitude: float


class FlightEfficiency(BaseModel):
    total_distance: float = 0.0  # metres
    flight_duration_min: float = 0.0
    coverage_ratio: float = 0.0
    signal_detection_rate: float = 0.0  # signals per minute
    optimal_altitude: float = 0.0
    redundant_path_percentage: float = 0.0
    energy_efficiency: float = 0.0  # metres per battery percent


class FlightAnomaly(BaseModel):
    timestamp: float
    position: Position
    type: AnomalyType
    severity: Severity
    description: str


class FlightAnalysis(BaseModel):
    """Complete post-flight analysis."""

    coverage_map: list[CoverageCell] = Field(default_factory=list)
    signal_hotspots: list[SignalHotspot] = Field(default_factory=list)
    flight_efficiency: FlightEfficiency = Field(default_factory=FlightEfficiency)
    recommendations: list[str] = Field(default_factory=list)
    anomalies: list[FlightAnomaly] = Field(default_factory=list)


def coverage_quality(signal_count: int) -> CoverageQuality:
    if signal_count > EXCELLENT_SIGNALS:
        return "excellent"
    if signal_count > GOOD_SIGNALS:
        return "good"
    if signal_count > FAIR_SIGNALS:
        return "fair"
    return "poor"


class FlightPathAnalyzer:
    """
    Post-flight analysis over a flight path and the captures taken along it.

    Holds no state between calls, so one instance can analyse several
    flights concurrently.
    """

    def __init__(self, config: AnalyticsConfig | None = None):
        self.config = config or AnalyticsConfig()
        self.cell_size_m = self.config.ANALYTICS_CELL_SIZE_M
        self.hotspot_radius_m = self.config.ANALYTICS_HOTSPOT_RADIUS_M
        self.min_cluster_size = self.config.ANALYTICS_MIN_CLUSTER_SIZE

    def analyze(
        self,
        flight_path: list[FlightPoint],
        signal_captures: list[SignalCapture],
        area_of_interest: AreaOfInterest | None = None,
    ) -> FlightAnalysis:
        """Run every analysis pass. Never raises on empty or degenerate input."""
        coverage_map = self.generate_coverage_map(flight_path, signal_captures)
        hotspots = self.identify_signal_hotspots(signal_captures)
        efficiency = self.calculate_efficiency(flight_path, signal_captures, area_of_interest)
        anomalies = self.detect_anomalies(flight_path, signal_captures)
        recommendations = self.generate_recommendations(
            coverage_map, hotspots, efficiency, anomalies
        )

        logger.info(
            f"Analyzed flight: {len(flight_path)} points, {len(signal_captures)} captures, "
            f"{len(hotspots)} hotspots, {len(anomalies)} anomalies"
        )
        return FlightAnalysis(
            coverage_map=coverage_map,
            signal_hotspots=hotspots,
            flight_efficiency=efficiency,
            recommendations=recommendations,
            anomalies=anomalies,
        )

    # ------------------------------------------------------------------
    # Coverage
    # ------------------------------------------------------------------

    def cell_index(self, lat: float, lon: float) -> tuple[int, int]:
        """Ground cell of a point. Longitude step is taken at the row's south edge."""
        lat_step = self.cell_size_m / METERS_PER_DEGREE_LAT
        row = math.floor(lat / lat_step)
        lon_step = self.cell_size_m / meters_per_degree_lon(row * lat_step)
        return row, math.floor(lon / lon_step)

    def cell_bounds(self, key: tuple[int, int]) -> CellBounds:
        row, col = key
        lat_step = self.cell_size_m / METERS_PER_DEGREE_LAT
        lon_step = self.cell_size_m / meters_per_degree_lon(row * lat_step)
        return CellBounds(
            min_lat=row * lat_step,
            max_lat=(row + 1) * lat_step,
            min_lon=col * lon_step,
            max_lon=(col + 1) * lon_step,
        )

    def generate_coverage_map(
        self, flight_path: list[FlightPoint], signal_captures: list[SignalCapture]
    ) -> list[CoverageCell]:
        altitudes: dict[tuple[int, int], list[float]] = {}
        for point in flight_path:
            altitudes.setdefault(self.cell_index(point.lat, point.lon), []).append(point.altitude)

        counts: dict[tuple[int, int], int] = defaultdict(int)
        power_sums: dict[tuple[int, int], float] = defaultdict(float)
        plain_powers: dict[tuple[int, int], list[float]] = defaultdict(list)
        for capture in signal_captures:
            key = self.cell_index(capture.position.lat, capture.position.lon)
            if key not in altitudes:
                continue
            counts[key] += capture.signal_count
            power_sums[key] += capture.average_power * capture.signal_count
            plain_powers[key].append(capture.average_power)

        cells = []
        for key, cell_altitudes in altitudes.items():
            bounds = self.cell_bounds(key)
            count = counts.get(key, 0)
            if count > 0:
                average_power = power_sums[key] / count
            elif plain_powers.get(key):
                average_power = float(np.mean(plain_powers[key]))
            else:
                average_power = 0.0
            cells.append(
                CoverageCell(
                    bounds=bounds,
                    center=Position(
                        lat=(bounds.min_lat + bounds.max_lat) / 2,
                        lon=(bounds.min_lon + bounds.max_lon) / 2,
                    ),
                    altitudes=cell_altitudes,
                    signal_count=count,
                    average_power=average_power,
                    coverage_quality=coverage_quality(count),
                )
            )
        return cells

    # ------------------------------------------------------------------
    # Hotspots
    # ------------------------------------------------------------------

    def cluster_captures(self, captures: list[SignalCapture]) -> list[list[SignalCapture]]:
        """
        Single-link clustering: captures within the merge radius of any member
        join the cluster.

        Pairwise O(n^2). Callers must keep per-flight capture counts bounded
        (ANALYTICS_MAX_CLUSTER_CAPTURES); larger inputs are still clustered
        but logged.
        """
        if len(captures) > self.config.ANALYTICS_MAX_CLUSTER_CAPTURES:
            logger.warning(
                f"Clustering {len(captures)} captures exceeds the supported bound of "
                f"{self.config.ANALYTICS_MAX_CLUSTER_CAPTURES}"
            )

        unvisited = set(range(len(captures)))
        clusters = []
        for seed in range(len(captures)):
            if seed not in unvisited:
                continue
            unvisited.discard(seed)
            members = [seed]
            frontier = [seed]
            while frontier:
                current = captures[frontier.pop()].position
                near = [
                    j
                    for j in unvisited
                    if haversine_distance(
                        current.lat, current.lon, captures[j].position.lat, captures[j].position.lon
                    )
                    <= self.hotspot_radius_m
                ]
                for j in near:
                    unvisited.discard(j)
                members.extend(near)
                frontier.extend(near)
            clusters.append([captures[i] for i in sorted(members)])
        return clusters

    def identify_signal_hotspots(self, signal_captures: list[SignalCapture]) -> list[SignalHotspot]:
        hotspots = []
        for cluster in self.cluster_captures(signal_captures):
            if len(cluster) < self.min_cluster_size:
                continue

            center = Position(
                lat=float(np.mean([c.position.lat for c in cluster])),
                lon=float(np.mean([c.position.lon for c in cluster])),
                altitude=float(np.mean([c.position.altitude for c in cluster])),
            )
            total_signals = sum(c.signal_count for c in cluster)
            avg_power = float(np.mean([c.average_power for c in cluster]))
            intensity = min(1.0, max(0.0, (total_signals / 100) * (avg_power + 100) / 100))

            bands = Counter(
                math.floor(s.frequency / 100) * 100 for c in cluster for s in c.signals
            )
            dominant_frequency = float(bands.most_common(1)[0][0]) if bands else 0.0

            altitude_powers: dict[float, list[float]] = defaultdict(list)
            for capture in cluster:
                band = math.floor(capture.position.altitude / 10) * 10
                altitude_powers[band].append(capture.average_power)
            recommended_altitude = max(
                altitude_powers, key=lambda band: float(np.mean(altitude_powers[band]))
            )

            radius = max(
                haversine_distance(center.lat, center.lon, c.position.lat, c.position.lon)
                for c in cluster
            )
            hotspots.append(
                SignalHotspot(
                    position=center,
                    radius=radius,
                    intensity=intensity,
                    dominant_frequency=dominant_frequency,
                    device_count=len({s.id for c in cluster for s in c.signals}),
                    recommended_altitude=float(recommended_altitude),
                )
            )

        return sorted(hotspots, key=lambda h: h.intensity, reverse=True)

    # ------------------------------------------------------------------
    # Efficiency
    # ------------------------------------------------------------------

    def estimate_total_cells(self, aoi: AreaOfInterest) -> float:
        cell_area = self.cell_size_m**2
        if aoi.type == "circle" and aoi.radius:
            return math.pi * aoi.radius**2 / cell_area
        if aoi.type == "rectangle" and len(aoi.coordinates) >= 4:
            (lat0, lon0), (lat1, lon1), _, (lat3, lon3) = aoi.coordinates[:4]
            width = haversine_distance(lat0, lon0, lat1, lon1)
            height = haversine_distance(lat0, lon0, lat3, lon3)
            return width * height / cell_area
        return POLYGON_CELL_ESTIMATE

    def calculate_efficiency(
        self,
        flight_path: list[FlightPoint],
        signal_captures: list[SignalCapture],
        aoi: AreaOfInterest | None = None,
    ) -> FlightEfficiency:
        if len(flight_path) < 2:
            return FlightEfficiency()

        total_distance = sum(
            haversine_distance(a.lat, a.lon, b.lat, b.lon)
            for a, b in zip(flight_path, flight_path[1:], strict=False)
        )

        cells = [self.cell_index(p.lat, p.lon) for p in flight_path]
        coverage_ratio = 1.0
        if aoi is not None:
            total_cells = self.estimate_total_cells(aoi)
            coverage_ratio = len(set(cells)) / total_cells if total_cells > 0 else 0.0

        duration_min = (flight_path[-1].timestamp - flight_path[0].timestamp) / 60
        total_signals = sum(c.signal_count for c in signal_captures)
        detection_rate = total_signals / duration_min if duration_min > 0 else 0.0

        band_counts: dict[float, int] = defaultdict(int)
        band_powers: dict[float, float] = defaultdict(float)
        for capture in signal_captures:
            band = math.floor(capture.position.altitude / 20) * 20
            band_counts[band] += capture.signal_count
            band_powers[band] += capture.average_power
        optimal_altitude = DEFAULT_OPTIMAL_ALTITUDE_M
        best_score = 0.0
        for band, count in band_counts.items():
            score = count * (band_powers[band] + 100)
            if score > best_score:
                best_score = score
                optimal_altitude = float(band)

        segments = Counter(zip(cells, cells[1:], strict=False))
        redundant = sum(1 for n in segments.values() if n > 1)
        redundant_percentage = redundant / len(segments) * 100 if segments else 0.0

        start_battery = flight_path[0].battery if flight_path[0].battery is not None else 100.0
        end_battery = flight_path[-1].battery if flight_path[-1].battery is not None else 0.0
        battery_used = start_battery - end_battery
        energy_efficiency = total_distance / battery_used if battery_used > 0 else 0.0

        return FlightEfficiency(
            total_distance=total_distance,
            flight_duration_min=duration_min,
            coverage_ratio=coverage_ratio,
            signal_detection_rate=detection_rate,
            optimal_altitude=optimal_altitude,
            redundant_path_percentage=redundant_percentage,
            energy_efficiency=energy_efficiency,
        )

    # ------------------------------------------------------------------
    # Anomalies
    # ------------------------------------------------------------------

    def detect_anomalies(
        self, flight_path: list[FlightPoint], signal_captures: list[SignalCapture]
    ) -> list[FlightAnomaly]:
        """Signal spikes, coverage gaps and altitude deviations, each independent."""
        anomalies: list[FlightAnomaly] = []

        if signal_captures:
            mean_count = float(np.mean([c.signal_count for c in signal_captures]))
            for capture in signal_captures:
                if capture.signal_count > mean_count * SPIKE_FACTOR:
                    anomalies.append(
                        FlightAnomaly(
                            timestamp=capture.timestamp,
                            position=capture.position,
                            type="signal_spike",
                            severity="high"
                            if capture.signal_count > mean_count * SPIKE_HIGH_FACTOR
                            else "medium",
                            description=(
                                f"Unusual signal concentration: {capture.signal_count} "
                                "signals detected"
                            ),
                        )
                    )

        for previous, point in zip(flight_path, flight_path[1:], strict=False):
            distance = haversine_distance(previous.lat, previous.lon, point.lat, point.lon)
            if distance > GAP_DISTANCE_M:
                anomalies.append(
                    FlightAnomaly(
                        timestamp=point.timestamp,
                        position=Position(
                            lat=(previous.lat + point.lat) / 2,
                            lon=(previous.lon + point.lon) / 2,
                            altitude=(previous.altitude + point.altitude) / 2,
                        ),
                        type="coverage_gap",
                        severity="high" if distance > GAP_HIGH_DISTANCE_M else "medium",
                        description=f"Coverage gap of {distance:.0f}m detected",
                    )
                )

        if flight_path:
            altitudes = np.array([p.altitude for p in flight_path], dtype=float)
            mean_altitude = float(altitudes.mean())
            std_dev = float(altitudes.std())
            if std_dev > 0:
                for point in flight_path:
                    deviation = abs(point.altitude - mean_altitude)
                    if deviation > std_dev * ALTITUDE_SIGMA:
                        anomalies.append(
                            FlightAnomaly(
                                timestamp=point.timestamp,
                                position=Position(
                                    lat=point.lat, lon=point.lon, altitude=point.altitude
                                ),
                                type="altitude_deviation",
                                severity="high"
                                if deviation > std_dev * ALTITUDE_HIGH_SIGMA
                                else "low",
                                description=(
                                    f"Altitude deviation: {point.altitude:.0f}m "
                                    f"(expected ~{mean_altitude:.0f}m)"
                                ),
                            )
                        )

        return anomalies

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def generate_recommendations(
        self,
        coverage_map: list[CoverageCell],
        hotspots: list[SignalHotspot],
        efficiency: FlightEfficiency,
        anomalies: list[FlightAnomaly],
    ) -> list[str]:
        recommendations: list[str] = []

        poor = sum(1 for cell in coverage_map if cell.coverage_quality == "poor")
        if poor > len(coverage_map) * POOR_COVERAGE_FRACTION:
            recommendations.append(
                "Increase scan density or reduce flight speed for better coverage"
            )

        if efficiency.optimal_altitude > 0:
            recommendations.append(
                f"Consider flying at {efficiency.optimal_altitude:g}m for optimal signal detection"
            )

        if hotspots:
            top = hotspots[0]
            recommendations.append(
                f"Focus on area around {top.position.lat:.6f}, {top.position.lon:.6f} "
                f"with {top.device_count} devices detected"
            )
            if top.recommended_altitude != efficiency.optimal_altitude:
                recommendations.append(
                    f"Adjust altitude to {top.recommended_altitude:g}m when investigating hotspots"
                )

        if efficiency.redundant_path_percentage > REDUNDANT_PATH_LIMIT:
            recommendations.append("Optimize flight path to reduce redundant coverage")

        if efficiency.signal_detection_rate < LOW_DETECTION_RATE:
            recommendations.append(
                "Consider slower flight speed or lower altitude for better signal detection"
            )

        high = sum(1 for a in anomalies if a.severity == "high")
        if high:
            recommendations.append(f"Investigate {high} high-severity anomalies detected")

        return recommendations


def collect_signal_captures(
    store: "SpatialSignalStore",
    flight_path: list[FlightPoint],
    radius_m: float = 50.0,
    window_s: float = 5.0,
) -> list[SignalCapture]:
    """
    Build one SignalCapture per flight point from stored history.

    Each capture holds the stored signals within ``radius_m`` of the point
    and ``window_s`` of its timestamp. Points with nothing nearby are skipped.
    """
    captures = []
    for index, point in enumerate(flight_path):
        records = store.find_signals_in_radius(
            SpatialQuery(
                lat=point.lat,
                lon=point.lon,
                radius_m=radius_m,
                start_time=point.timestamp - window_s,
                end_time=point.timestamp + window_s,
            )
        )
        if not records:
            continue
        captures.append(
            SignalCapture(
                id=f"capture-{index}",
                timestamp=point.timestamp,
                position=Position(lat=point.lat, lon=point.lon, altitude=point.altitude),
                signals=[
                    CapturedSignal(id=r.device_id or r.id, frequency=r.frequency, power=r.power)
                    for r in records
                ],
                average_power=float(np.mean([r.power for r in records])),
                signal_count=len(records),
            )
        )
    return captures
