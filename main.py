import asyncio
import logging
import math
import os
import re
from typing import Optional, Union

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel

load_dotenv()

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

# Gumroad v2 REST API. Override GUMROAD_API_HOST only for staging/mocks.
DEFAULT_API_HOST = "https://api.gumroad.com"
# Product shown on the storefront when GUMROAD_PRODUCT_ID is not set.
DEFAULT_PRODUCT_ID = "rdcvzn"

# Edge cache for 15 minutes, serve stale while Vercel refetches in the background.
CACHE_CONTROL = "s-maxage=900, stale-while-revalidate"
ANY_METHOD = ["GET", "HEAD", "OPTIONS", "POST", "PUT", "PATCH", "DELETE"]
GENERIC_ERROR = "An internal server error occurred while fetching Gumroad data."

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")


class GumroadError(Exception):
    """Raised for missing configuration or an unusable Gumroad API response."""


class ProductSummary(BaseModel):
    sales_count: int
    rating_average: float = 0
    rating_count: int = 0
    formatted_price: str
    permalink: str


class ReviewEntry(BaseModel):
    name: str
    rating: Union[int, float]
    content: str
    avatar_id: str


class ProductPage(ProductSummary):
    reviews: list[ReviewEntry] = []


class ErrorBody(BaseModel):
    error: str
    details: str


def _settings() -> dict:
    """
    Read configuration at request time.

    Vercel injects env vars per deployment; reading them lazily (rather than at
    import) keeps a missing token a per-request 500 instead of a crashed function.
    """
    return {
        "access_token": os.getenv("GUMROAD_ACCESS_TOKEN"),
        "product_id": os.getenv("GUMROAD_PRODUCT_ID") or DEFAULT_PRODUCT_ID,
        "api_host": (os.getenv("GUMROAD_API_HOST") or DEFAULT_API_HOST).rstrip("/"),
    }


async def get_http_client():
    async with httpx.AsyncClient() as client:
        yield client


def avatar_id_for(name: str) -> str:
    """Display key for the frontend's avatar: the reviewer name minus anything not [A-Za-z0-9]."""
    return _NON_ALNUM.sub("", name or "")


def _to_float(value) -> float:
    # Gumroad sends average_rating as a string ("4.5"), sometimes as a number.
    if value is None or value == "":
        return 0.0
    number = float(value)
    if not math.isfinite(number):
        raise GumroadError(f"Gumroad returned a non-finite rating: {value!r}")
    return number


def normalize_product(payload: dict) -> ProductSummary:
    """
    Flatten Gumroad's { "product": {...} } envelope into the fields the storefront uses.

    Products without ratings come back with no `rating` object (or a null one);
    both rating fields default to 0 in that case.
    """
    product = payload.get("product") if isinstance(payload, dict) else None
    if not isinstance(product, dict):
        raise GumroadError("Gumroad Product API response did not contain a product object.")

    rating = product.get("rating")
    if not isinstance(rating, dict):
        rating = {}

    return ProductSummary(
        sales_count=int(product.get("sales_count") or 0),
        rating_average=_to_float(rating.get("average_rating")),
        rating_count=int(rating.get("count") or 0),
        formatted_price=str(product.get("formatted_price") or ""),
        permalink=str(product.get("permalink") or DEFAULT_PRODUCT_ID),
    )


def normalize_reviews(payload: dict) -> list[ReviewEntry]:
    reviews = payload.get("reviews") if isinstance(payload, dict) else None
    if reviews is None:
        return []
    if not isinstance(reviews, list):
        raise GumroadError("Gumroad Reviews API response did not contain a reviews list.")

    entries = []
    for review in reviews:
        if not isinstance(review, dict):
            raise GumroadError(f"Unexpected Gumroad review record: {review!r}")
        name = str(review.get("user_name") or "")
        entries.append(
            ReviewEntry(
                name=name,
                rating=review.get("rating") or 0,
                content=str(review.get("review_content") or ""),
                avatar_id=avatar_id_for(name),
            )
        )
    return entries


def _raise_for_gumroad_status(resp: httpx.Response, label: str) -> None:
    if resp.is_success:
        return
    raise GumroadError(
        f"Gumroad {label} API responded with status {resp.status_code}. Details: {resp.text}"
    )


async def fetch_product_page(client: httpx.AsyncClient, settings: Optional[dict] = None) -> ProductPage:
    """
    Fetch product details and reviews in parallel and merge them.

    Both requests run to completion before either is inspected. A 404 from the
    reviews endpoint means the product has no reviews yet; any other failure
    aborts the whole request.
    """
    settings = settings or _settings()
    access_token = settings.get("access_token")
    if not access_token:
        logger.error("GUMROAD_ACCESS_TOKEN environment variable is not set.")
        raise GumroadError("Server configuration error: Missing API token.")

    product_id = settings["product_id"]
    product_url = f"{settings['api_host']}/v2/products/{product_id}"
    reviews_url = f"{product_url}/reviews"
    headers = {"Authorization": f"Bearer {access_token}"}

    logger.debug("Fetching Gumroad product %s and its reviews", product_id)
    product_res, reviews_res = await asyncio.gather(
        client.get(product_url, headers=headers),
        client.get(reviews_url, headers=headers),
        return_exceptions=True,
    )
    # Product failures win when both calls failed.
    if isinstance(product_res, BaseException):
        raise product_res
    _raise_for_gumroad_status(product_res, "Product")

    if isinstance(reviews_res, BaseException):
        raise reviews_res
    if reviews_res.status_code == 404:
        logger.debug("No reviews found for Gumroad product %s", product_id)
        reviews_data = {"reviews": []}
    else:
        _raise_for_gumroad_status(reviews_res, "Reviews")
        reviews_data = reviews_res.json()

    summary = normalize_product(product_res.json())
    return ProductPage(**summary.model_dump(), reviews=normalize_reviews(reviews_data))


@app.api_route("/api/gumroad", methods=ANY_METHOD)
async def gumroad_product(client: httpx.AsyncClient = Depends(get_http_client)):
    """
    Public endpoint for the storefront: product stats + reviews as one JSON document.
    Request method, query and body are ignored.
    """
    try:
        page = await fetch_product_page(client)
        # Rendering raises ValueError on NaN/inf, so it stays inside the try.
        return JSONResponse(content=page.model_dump(), headers={"Cache-Control": CACHE_CONTROL})
    except GumroadError as e:
        details = str(e)
    except (httpx.HTTPError, ValueError) as e:
        # Transport failures, undecodable JSON and unrenderable values from Gumroad.
        details = f"{type(e).__name__}: {e}"

    logger.error("Error in Gumroad proxy: %s", details)
    return JSONResponse(
        status_code=500,
        content=ErrorBody(error=GENERIC_ERROR, details=details).model_dump(),
    )


@app.get("/debug/config")
def debug_config():
    """
    Debug helper: shows which settings are present (without exposing the token).
    """
    settings = _settings()
    return {
        "gumroad": {
            "hasAccessToken": bool(settings["access_token"]),
            "productId": settings["product_id"],
            "apiHost": settings["api_host"],
        },
    }
