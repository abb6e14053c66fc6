"""Utility helpers for orbit-sync."""
