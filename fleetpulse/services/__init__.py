"""Domain services: location, attendance, SOS, trips, dashboards and storage."""
