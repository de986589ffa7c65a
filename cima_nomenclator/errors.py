# cima_nomenclator/errors.py
"""
Jerarquía de errores del pipeline de nomenclátor.
"""
from typing import Optional


class NomenclatorError(Exception):
    """Error base del paquete."""


class FetchError(NomenclatorError):
    """
    Fallo al obtener el volcado. `stage` indica la fase:
    'directory', 'download', 'archive' o 'extract'.
    """

    def __init__(self, stage: str, message: str):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class TransportError(FetchError):
    """Error de red o respuesta HTTP no válida durante la descarga."""


class ArchiveError(FetchError):
    """ZIP corrupto o entrada que no se puede leer/escribir."""


class SchemaError(NomenclatorError, ValueError):
    """El XML no tiene la estructura esperada para un catálogo."""

    def __init__(self, catalog: str, message: Optional[str] = None):
        super().__init__(message or f"Failed to deserialize {catalog} XML")
        self.catalog = catalog
