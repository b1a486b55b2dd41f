"""Strata utilities."""
