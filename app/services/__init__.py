"""Business logic services for the provisioning service."""
