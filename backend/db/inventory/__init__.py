"""
Open-bar inventory ledger.

Models:
- InventoryMovement (append-only deltas; Ingredient.current_stock is their running sum)
"""
