"""Chat orchestration services."""
