"""Aegis mobile anti-malware backend."""
