"""Adapters for Clinport: format normalizers and storage."""
