"""Agora command-line tools."""
