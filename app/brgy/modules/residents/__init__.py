"""
Residents (read-only from the certificate workflow's point of view).
"""
