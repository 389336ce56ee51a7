"""Shared infrastructure for aiohttp services: settings, logging, db, workers."""
