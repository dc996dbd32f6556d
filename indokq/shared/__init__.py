"""Helpers shared by the engine and frontends."""
