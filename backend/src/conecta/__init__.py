"""Realtime chat core for the Conecta backend."""
