"""Core module - infraestructura compartida.

Estructura:
- redis/  → Conexión a Redis (cache + rate limiter)
"""
