"""Stateful, resumable agent graphs executed in Pregel-style super-steps."""
