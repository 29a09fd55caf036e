from __future__ import annotations

import re

QUOTE_ASSET = "USDT"
QUOTE_SUFFIX_RE = re.compile(r"(USDT|BUSD)$")

# Removed from the venue; no useful history to track.
DELISTED_TOKENS = {
    "ALPACA",
    "BNX",
    "OCEAN",
    "DGB",
    "AKRO",
    "SXP",
    "TRB",
    "KNC",
    "CRV",
    "STORJ",
    "ANT",
    "COMP",
    "MKR",
    "YFI",
    "SUSHI",
    "UMA",
    "BNT",
    "REN",
    "LRC",
    "BAL",
    "ZRX",
    "KAVA",
    "IOTX",
    "RVN",
    "CHZ",
    "HOT",
    "VET",
    "TFUEL",
    "HBAR",
    "ICX",
    "QTUM",
    "ONT",
    "ZIL",
    "IOST",
    "WAVES",
    "SC",
    "AGIX",
}


def normalize_symbol(raw: str | None) -> str:
    symbol = str(raw or "").strip().upper()
    if not symbol:
        return ""
    if not symbol.endswith(QUOTE_ASSET):
        symbol = f"{symbol}{QUOTE_ASSET}"
    return symbol


def base_asset(symbol: str | None) -> str:
    return QUOTE_SUFFIX_RE.sub("", str(symbol or "").strip().upper())


def is_token_in_list(symbol: str, tokens: set[str]) -> bool:
    return base_asset(symbol) in tokens


def filter_historical_pairs(symbols: list[str]) -> list[str]:
    """Drop delisted tokens; anything still listed keeps its history."""
    return [symbol for symbol in symbols if not is_token_in_list(symbol, DELISTED_TOKENS)]


def parse_symbols(raw: str | None) -> list[str]:
    tokens = [normalize_symbol(token) for token in str(raw or "").split(",") if str(token).strip()]
    return list(dict.fromkeys(token for token in tokens if token))
