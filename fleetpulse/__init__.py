"""FleetPulse: realtime location, SOS and attendance core for bus fleets."""

__version__ = "0.1.0"
