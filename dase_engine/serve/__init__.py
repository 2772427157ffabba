"""HTTP query endpoint for a deployed engine."""
