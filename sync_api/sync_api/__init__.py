"""TenantSync HTTP service: Command API, webhook receiver and tenant registry."""

__version__ = "0.1.0"
