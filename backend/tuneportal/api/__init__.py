"""TunePortal API routes."""
