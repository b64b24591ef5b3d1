"""Shared pytest fixtures for procpipe tests."""
