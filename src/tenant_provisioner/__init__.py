"""Tenant provisioning against an eventually-consistent infrastructure control plane."""
