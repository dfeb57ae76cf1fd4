"""Grouple booking chat service."""
