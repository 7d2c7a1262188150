# schemas/__init__.py
# ============================================================================
# STOREFRONT — SCHEMAS
# ============================================================================
# Pydantic models shared by storage, services, API and the cart client
# ============================================================================
