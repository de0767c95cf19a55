from .catalog import Store, Product, Customer, Vendor, SalesAgent, FinancialAccount
from .inventory import StoreStock, StockLedgerEntry, Backorder
from .documents import DocumentSequence, Document, DocumentLine, DocumentLink
from .finance import Commission, PromissoryNote, Receipt

__all__ = [
    'Store', 'Product', 'Customer', 'Vendor', 'SalesAgent', 'FinancialAccount',
    'StoreStock', 'StockLedgerEntry', 'Backorder',
    'DocumentSequence', 'Document', 'DocumentLine', 'DocumentLink',
    'Commission', 'PromissoryNote', 'Receipt',
]
