"""Fyla subscription entitlement and feature gating engine."""
