from typing import List, Optional

from pydantic import BaseModel


class StripeProduct(BaseModel):
    id: str
    price_id: str
    name: str
    description: str
    mode: str  # "payment" or "subscription"
    price: str


STRIPE_PRODUCTS: List[StripeProduct] = [
    StripeProduct(
        id='prod_SstdJiFTZ1nLkY',
        price_id='price_1Rx7qeETBte9tCIcutDIt3St',
        name='Glow Guide Monthly Subscription',
        description='Your personal beauty & wellness companion with monthly insights and personalized transformation plans',
        mode='subscription',
        price='$4.99/month',
    ),
]


def get_product_by_id(product_id: str) -> Optional[StripeProduct]:
    return next((p for p in STRIPE_PRODUCTS if p.id == product_id), None)


def get_product_by_price_id(price_id: str) -> Optional[StripeProduct]:
    return next((p for p in STRIPE_PRODUCTS if p.price_id == price_id), None)
