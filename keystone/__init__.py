"""Keystone - multi-tenant property management backend."""
