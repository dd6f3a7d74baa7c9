"""Centralized prompt templates for LLM interactions."""

from typing import Optional

from pydantic import BaseModel

VETTING_SYSTEM_PROMPT = (
    "You are a dropshipping supplier risk assessment expert. "
    "Be conservative but fair in your assessments."
)

VETTING_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "approved": {"type": "boolean"},
        "reason": {"type": "string"},
        "riskScore": {"type": "number"},
    },
    "required": ["approved", "reason", "riskScore"],
}

RISK_SYSTEM_PROMPT = "You are a predictive risk analysis AI for dropshipping products."

RISK_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "riskScore": {"type": "number"},
        "reasoning": {"type": "string"},
    },
    "required": ["riskScore", "reasoning"],
}


class SupplierVettingPrompt(BaseModel):
    """Prompt schema for vetting a replacement supplier."""

    product_name: str
    original_price: Optional[float] = None
    original_rating: Optional[float] = None
    candidate_url: str
    candidate_price: float
    candidate_rating: float
    candidate_shipping: str
    image_match_confidence: float
    total_orders: Optional[int] = None

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        original_price = f"${self.original_price:.2f}" if self.original_price is not None else "Unknown"
        original_rating = f"{self.original_rating}" if self.original_rating is not None else "N/A"

        return f"""Analyze this supplier candidate and determine if it's safe to auto-replace the removed product.

ORIGINAL PRODUCT:
- Name: {self.product_name}
- Original Price: {original_price}
- Original Rating: {original_rating}

CANDIDATE SUPPLIER:
- URL: {self.candidate_url}
- Price: ${self.candidate_price:.2f}
- Supplier Rating: {self.candidate_rating}/5.0
- Shipping: {self.candidate_shipping}
- Image Match Confidence: {self.image_match_confidence:.0f}%
- Total Orders: {self.total_orders if self.total_orders is not None else "Unknown"}

ASSESSMENT CRITERIA:
1. Is the price reasonable? (Should be within 20% of original)
2. Is the supplier rating high enough? (Should be 4.5+ stars)
3. Does the shipping method provide tracking?
4. Is the image match confidence high enough? (Should be 85%+)
5. Are there any red flags? (Too cheap, no reviews, suspicious patterns)

Give "reason" as a brief explanation (max 100 chars) and "riskScore" from 0 (no risk) to 100 (high risk)."""


class RiskScorePrompt(BaseModel):
    """Prompt schema for predicting supplier removal risk."""

    current_price: Optional[float] = None
    supplier_rating: Optional[float] = None
    stock_level: int
    last_checked: Optional[str] = None
    status: str
    history: list[str] = []

    def to_prompt(self) -> str:
        """Convert to prompt text."""
        price = f"${self.current_price:.2f}" if self.current_price is not None else "Unknown"
        rating = f"{self.supplier_rating}/5.0" if self.supplier_rating is not None else "Unknown"
        history = "\n".join(f"- {line}" for line in self.history) or "- (no automation history)"

        return f"""Analyze this dropshipping product's risk of supplier removal:

PRODUCT:
- Current Price: {price}
- Supplier Rating: {rating}
- Stock Level: {self.stock_level}
- Last Checked: {self.last_checked or "Never"}
- Status: {self.status}

HISTORY:
{history}

Calculate a risk score (0-100) where:
- 0-20: Very Low Risk (stable supplier, good history)
- 21-40: Low Risk
- 41-60: Medium Risk
- 61-80: High Risk (price fluctuations, stock issues)
- 81-100: Very High Risk (likely to be removed soon)"""
