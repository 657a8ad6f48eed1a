"""Reference lesson pipeline built on the job engine."""
