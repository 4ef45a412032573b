"""Application services: import orchestration and bulk persistence."""
