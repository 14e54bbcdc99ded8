"""Ticket workflow orchestration service."""
