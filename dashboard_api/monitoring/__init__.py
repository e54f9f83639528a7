"""Observabilidad: métricas Prometheus y reporte de errores."""
