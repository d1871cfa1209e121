from .tenancy import Company
from .inventory import Product, ProductSku, InventoryMovement, CogsRecord, ImmutableRecordError
from .marketplace import MarketplaceProductMapping, MarketplaceTransaction, MarketplaceTransactionItem
from .finance import (
    Category, CostCenter, Responsible, CategorizationRule,
    AccountPayable, AccountReceivable, StatementTransaction, CashMovement,
)

__all__ = [
    'Company',
    'Product', 'ProductSku', 'InventoryMovement', 'CogsRecord', 'ImmutableRecordError',
    'MarketplaceProductMapping', 'MarketplaceTransaction', 'MarketplaceTransactionItem',
    'Category', 'CostCenter', 'Responsible', 'CategorizationRule',
    'AccountPayable', 'AccountReceivable', 'StatementTransaction', 'CashMovement',
]
