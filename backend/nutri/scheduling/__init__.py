"""
Scheduling core

- Numero de protocolo por paciente (protocol.py)
- Horarios reservables a partir de la plantilla semanal (availability.py)
- Limites de "hoy" en UTC (day_bounds.py)
"""
