"""Element-agglomeration AMG (AMGe) restriction operators."""
from . import amge, restrictor
from .restrictor import setup_restrictor
from .amge.types import RestrictorConfig

__all__ = [
    'amge',
    'restrictor',
    'setup_restrictor',
    'RestrictorConfig',
]
