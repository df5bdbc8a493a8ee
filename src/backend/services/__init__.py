"""Services module for ARGOS application."""

from .event_bus import EventBus, Subscription
from .flight_path_analyzer import FlightPathAnalyzer
from .signal_aggregator import SignalAggregator
from .signal_recorder import SignalRecorder
from .sweep_manager import SweepManager

__all__ = [
    "EventBus",
    "FlightPathAnalyzer",
    "SignalAggregator",
    "SignalRecorder",
    "Subscription",
    "SweepManager",
]
