"""
Interactive Brokers gateway adapter package.

- IbConnectionManager: the single gateway connection and its lifecycle
- ContractClassifier: industry/category/country lookup per instrument
- converters: ib_async objects -> refresh pipeline models
"""

from .connection_manager import IbConnectionManager
from .contract_classifier import ContractClassifier
from .converters import IB_BOND_PRICE_SCALE

__all__ = [
    "IbConnectionManager",
    "ContractClassifier",
    "IB_BOND_PRICE_SCALE",
]
