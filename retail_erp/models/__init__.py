from retail_erp.models.catalog import Category, PriceList, Product, ProductPrice
from retail_erp.models.warehouse import Warehouse
from retail_erp.models.purchase import Purchase, PurchaseDetail
from retail_erp.models.inventory import Inventory, PurchaseBatch, StockMovement, StockReservation, StockReservationBatch
from retail_erp.models.cart import Cart, CartItem
from retail_erp.models.order import Order, OrderAllocation, OrderItem, OrderStatusHistory
from retail_erp.models.sales import Payment, Sale, SaleItem
from retail_erp.models.audit_log import AuditLog
