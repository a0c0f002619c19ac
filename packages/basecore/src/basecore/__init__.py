"""
BaseCore - shared infrastructure for the texting services

Settings, logging, database sessions, Redis client, credential
encryption and metrics. Nothing in here knows about messages.
"""
