"""Job pipeline: orchestration, process supervision and progress inference."""
