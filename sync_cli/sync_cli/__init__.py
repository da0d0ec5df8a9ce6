"""Operator CLI for the TenantSync service."""
