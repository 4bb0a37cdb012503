"""Backup and restore of Microsoft Entra application registrations.

This package collects application registrations together with their service
principals and credentials from a tenant through Microsoft Graph, writes them to
a portable JSON file, and recreates them in the same or another tenant.
"""
