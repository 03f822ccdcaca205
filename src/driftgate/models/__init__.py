# Copyright (c) Syntropy Systems
"""Pydantic schemas for driftgate artifacts."""
