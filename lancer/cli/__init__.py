"""Lancer command-line interface."""
