"""
Pydantic schemas for the storefront API.
"""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: Literal["ok"]


class MessageResponse(BaseModel):
    message: str


class SessionResponse(BaseModel):
    authenticated: bool
    redirect: Optional[str] = None


class CountryOptionResponse(BaseModel):
    iso: str
    name: str
    dial_code: str
    flag: str


class CountriesResponse(BaseModel):
    countries: List[CountryOptionResponse]


class RegisterRequest(BaseModel):
    username: str = ""
    password: str = ""
    pin: str = ""
    country_iso: Optional[str] = None
    phone: str = ""
    captcha_token: Optional[str] = None


class LoginCredentialsRequest(BaseModel):
    username: str = ""
    password: str = ""
    country_iso: Optional[str] = None
    phone: str = ""
    captcha_token: Optional[str] = None


class LoginCredentialsResponse(BaseModel):
    challenge_id: str
    message: str


class LoginPinRequest(BaseModel):
    challenge_id: str = ""
    username: str = ""
    password: str = ""
    pin: str = ""


class LoginPinResponse(BaseModel):
    message: str
    redirect: str
    user_id: str
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None


class ViewerResponse(BaseModel):
    mode: Literal["guest", "affiliate"]
    logged_in: bool
    account_label: str
    account_href: str
    price_label: str


class ExtraRequiredFieldResponse(BaseModel):
    key: str
    label: str
    placeholder: str = ""
    required: bool = False


class ProductResponse(BaseModel):
    id: int
    name: str
    logo: str
    stock: int
    summary: str
    category: str
    duration_days: Optional[int] = None
    duration_label: str
    price: float
    price_label: str
    price_guest: float
    price_affiliate: float
    renewal_price: Optional[float] = None
    provider_id: str
    provider_name: str
    provider_avatar_url: str = ""
    delivery_mode: str
    delivery_mode_label: str
    account_type: str
    account_type_label: str
    renewable: bool
    renewable_label: str
    extra_required_fields: List[ExtraRequiredFieldResponse] = Field(default_factory=list)


class TrendingProductResponse(BaseModel):
    product: ProductResponse
    orders: int


class NameFilterResponse(BaseModel):
    id: str
    name: str
    keyword: str
    image_url: str
    sort_order: float


class CategoryOption(BaseModel):
    key: str
    label: str


class HomeResponse(BaseModel):
    viewer: ViewerResponse
    featured: List[ProductResponse]
    message: str = ""


class ProductsResponse(BaseModel):
    viewer: ViewerResponse
    message: str = ""
    categories: List[CategoryOption]
    name_filters: List[NameFilterResponse]
    trending: List[TrendingProductResponse]
    total_trend_orders: float
    recommendations: List[ProductResponse]
    products: List[ProductResponse]
    page: int
    page_size: int
    total_pages: int
    total_items: int
    columns: int
    page_numbers: List[int]
    seed: int
    next_seed: int


class PurchaseRequest(BaseModel):
    customer_name: str = ""
    customer_phone: str = ""
    extra_values: Dict[str, str] = Field(default_factory=dict)


class PurchaseResponse(BaseModel):
    message: str
    order_id: Optional[str] = None
    on_demand: bool = False


class AffiliateRequest(BaseModel):
    username: str = ""


class AffiliateResponse(BaseModel):
    code: str
    message: str
    debug_message: Optional[str] = None


class AdminProfile(BaseModel):
    id: str
    username: Optional[str] = None
    role: Optional[str] = None
    is_approved: Optional[bool] = None
    balance: Optional[float] = None
    created_at: Optional[str] = None


class AdminProfilesResponse(BaseModel):
    profiles: List[AdminProfile]
