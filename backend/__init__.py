"""Room Occupancy HTTP backend."""
