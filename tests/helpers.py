from decimal import Decimal

from marketplace.models import Market, Product, User, UserRole


def as_user(user_id):
    return {"X-User-Id": user_id}


async def add_market(storage, market_id="market-1", city="Medellin", name="Mercado Central"):
    return await storage.put("markets", Market(id=market_id, name=name, city=city))


async def add_user(storage, user_id, role=UserRole.CUSTOMER):
    return await storage.put("users", User(id=user_id, email=f"{user_id}@example.com", role=role))


async def add_product(storage, product_id, stock=5, price="2.50", seller_id="seller-1", market_id="market-1", category="fruit"):
    return await storage.put("products", Product(
        id=product_id,
        seller_id=seller_id,
        market_id=market_id,
        category=category,
        name=f"Product {product_id}",
        price=Decimal(price),
        stock_quantity=stock,
    ))
