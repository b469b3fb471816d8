"""Browser automation sidecar reachable through the consume daemon."""
