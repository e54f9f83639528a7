"""Sanitización y validación de entradas no confiables."""
