"""Shared helpers for the training application."""
