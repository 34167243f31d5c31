from .auth_routes import auth_bp
from .admin_routes import admin_bp
from .property_routes import property_bp
from .work_order_routes import work_order_bp
from .invoice_routes import invoice_bp
from .webhook_routes import webhook_bp
from .dashboard_routes import dashboard_bp

__all__ = ["auth_bp", "admin_bp", "property_bp", "work_order_bp", "invoice_bp", "webhook_bp", "dashboard_bp"]
