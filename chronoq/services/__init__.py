"""Long-running loops: scheduler, lease reaper, worker pool."""
