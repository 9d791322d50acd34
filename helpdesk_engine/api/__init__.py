"""Helpdesk Engine HTTP API."""
