"""Conecta backend application hosting the realtime chat core."""
