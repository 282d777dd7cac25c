# nutri/errors.py
"""
Errores de dominio. Los calculos de agenda los lanzan de forma sincronica;
la capa HTTP (main.py) los traduce a respuestas.
"""


class NutriError(Exception):
    status_code = 500


class BackingStoreError(NutriError, LookupError):
    """La base de datos no respondio."""
    status_code = 503


class NotFoundError(NutriError, LookupError):
    status_code = 404


class ValidationError(NutriError, ValueError):
    """Plantilla de disponibilidad o protocolo mal formado."""
    status_code = 422


class InputError(NutriError, ValueError):
    """Fecha o argumento fuera de rango representable."""
    status_code = 400


class ConflictError(NutriError):
    status_code = 409


class SequenceExhaustedError(NutriError):
    """El mes ya uso los 9999 numeros de protocolo."""
    status_code = 409
