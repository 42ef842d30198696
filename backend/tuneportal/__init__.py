"""TunePortal backend: authentication and security enforcement."""
