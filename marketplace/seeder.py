import asyncio
import logging
from decimal import Decimal

from marketplace import config
from marketplace.database import create_engine, create_session_factory, init_db
from marketplace.errors import NotFound
from marketplace.models import Market, Product, User, UserRole
from marketplace.storage import StorageAdapter

logger = logging.getLogger(__name__)


def sample_entities():
    markets = [
        Market(id="market-medellin-1", name="Mercado del Rio", city="Medellin", address="Calle 24 #48-28",
               schedule={"days": ["sat", "sun"], "opens": "08:00", "closes": "15:00"}),
        Market(id="market-medellin-2", name="Placita de Florez", city="Medellin", address="Carrera 40 #51-20",
               schedule={"days": ["mon", "tue", "wed", "thu", "fri", "sat"], "opens": "06:00", "closes": "18:00"}),
        Market(id="market-bogota-1", name="Paloquemao", city="Bogota", address="Avenida 19 #25-04",
               schedule={"days": ["mon", "tue", "wed", "thu", "fri", "sat", "sun"], "opens": "05:00", "closes": "16:00"}),
    ]
    users = [
        User(id="user-seller-1", email="finca.aurora@example.com", name="Finca Aurora", role=UserRole.SELLER),
        User(id="user-both-1", email="huerta.viva@example.com", name="Huerta Viva", role=UserRole.BOTH),
        User(id="user-customer-1", email="ana@example.com", name="Ana", role=UserRole.CUSTOMER),
    ]
    products = [
        Product(id="product-avocado", seller_id="user-seller-1", market_id="market-medellin-1", category="fruit",
                name="Hass avocado", price=Decimal("2.50"), stock_quantity=40),
        Product(id="product-coffee", seller_id="user-seller-1", market_id="market-medellin-1", category="coffee",
                name="Single origin coffee 500g", price=Decimal("12.00"), stock_quantity=15),
        Product(id="product-lulo", seller_id="user-both-1", market_id="market-medellin-2", category="fruit",
                name="Lulo", price=Decimal("1.20"), stock_quantity=5),
        Product(id="product-arepas", seller_id="user-both-1", market_id="market-bogota-1", category="bakery",
                name="Arepas de choclo (6)", price=Decimal("4.75"), stock_quantity=0), # For testing InsufficientStock
    ]
    return markets, users, products


async def seed(storage: StorageAdapter) -> bool:
    """Seed sample data. Returns False when the data is already there."""
    markets, users, products = sample_entities()
    try:
        await storage.get("markets", markets[0].id)
        logger.info("Marketplace already seeded.")
        return False
    except NotFound:
        pass

    for collection, entities in (("markets", markets), ("users", users), ("products", products)):
        for entity in entities:
            await storage.put(collection, entity)
    logger.info(f"Seeded {len(markets)} markets, {len(users)} users and {len(products)} products.")
    return True


async def main():
    engine = create_engine(config.DATABASE_URL)
    await init_db(engine)
    try:
        await seed(StorageAdapter(create_session_factory(engine)))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    asyncio.run(main())
