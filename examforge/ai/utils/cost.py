from __future__ import annotations

from typing import Any

PricingTable = dict[str, dict[str, tuple[float, float]]]


def calculate_call_cost(usage: dict[str, Any], pricing_table: PricingTable | None = None, *, provider: str = "gemini", model: str | None = None) -> float:
  """Estimate the cost of one generation call from its token usage (prices per million tokens)."""
  pricing = pricing_table or {}
  provider_rates = pricing.get(provider.strip().lower(), {})
  price_in, price_out = provider_rates.get(str(model or "").strip(), (0.0, 0.0))

  in_tokens = int(usage.get("prompt_tokens") or 0)
  out_tokens = int(usage.get("completion_tokens") or 0)

  call_cost = (in_tokens / 1_000_000) * price_in
  call_cost += (out_tokens / 1_000_000) * price_out
  return round(call_cost, 6)
