"""
Validadores y helpers compartidos entre módulos
"""
import re
from datetime import datetime, timezone
from typing import Mapping, Optional


def slugify_title(title: str) -> str:
    """
    Slug base para una compañía.
    - minúsculas
    - cada secuencia de caracteres no alfanuméricos se convierte en "-"
    - sin guiones al inicio ni al final
    """
    return re.sub(r'[^a-z0-9]+', '-', title.lower()).strip('-')


def validate_currency_code(code: str) -> str:
    """ISO 4217: exactamente tres letras. Se normaliza a mayúsculas."""
    cleaned = code.strip()
    if not re.match(r'^[A-Za-z]{3}$', cleaned):
        raise ValueError('Currency must be a 3-letter ISO code')
    return cleaned.upper()


def client_ip_from_headers(headers: Mapping[str, str], fallback: Optional[str] = None) -> str:
    """
    IP del cliente detrás de proxies.
    Orden: primer valor de X-Forwarded-For, X-Real-IP, fallback, "unknown".
    """
    forwarded = headers.get('x-forwarded-for')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    real_ip = headers.get('x-real-ip')
    if real_ip:
        return real_ip
    return fallback or 'unknown'


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite devuelve datetimes naive; se asumen en UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
