"""Planning, fallback engines, verification and the work-unit pipeline."""
