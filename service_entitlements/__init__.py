"""Entitlements service for the learning portal access layer."""
