"""API routers for the provisioning service."""
