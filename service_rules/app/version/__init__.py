"""Version drift detection, refresh and rollback snapshots."""
