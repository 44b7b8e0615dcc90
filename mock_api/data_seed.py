from __future__ import annotations

import json
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List

USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
WETH = "0x4200000000000000000000000000000000000006"
CBBTC = "0xcbb7c0000ab88b473b1f5afd9ef808440eed33bf"
PERMIT2 = "0x000000000022d473030f116ddee9f6b43ac78ba3"
ROUTER = "0x6ff5693b99212da76ad316178a184ab56d299b43"
ACCOUNT_FACTORY = "0x69aa2f9fe1572f1b640e1bbc512f5c3a734fc77c"
OPERATOR = "0x00000000000000000000000000000000000000aa"
DEPLOYED_CODE = "0x6080604052"


def _address(prefix: str, index: int) -> str:
    return "0x" + prefix + f"{index:0{40 - len(prefix)}x}"


def _delegation_blob(delegator: str, delegate: str) -> str:
    return json.dumps(
        {
            "delegate": delegate,
            "delegator": delegator,
            "authority": "0x" + "ff" * 32,
            "caveats": [],
            "salt": "0x1",
            "signature": "0x" + "11" * 65,
        }
    )


def _accounts(rng: random.Random) -> List[Dict[str, object]]:
    """Smart accounts covering the interesting shapes.

    ``ready`` has approvals in place, ``fresh`` needs both grants, ``dust``
    sits below the minimum value and ``pending`` has not been deployed yet.
    """
    shapes = [
        ("ready", True, True, 250.0),
        ("fresh", False, True, 400.0),
        ("dust", True, True, 2.0),
        ("pending", False, False, 150.0),
    ]
    accounts: List[Dict[str, object]] = []
    for index, (label, approved, deployed, usdc) in enumerate(shapes, start=1):
        accounts.append(
            {
                "label": label,
                "user_address": _address("ee", index),
                "smart_account": _address("5a", index),
                "usdc": int((usdc + rng.uniform(0, 5)) * 10**6),
                "weth": 0 if label == "dust" else int(rng.uniform(0.01, 0.05) * 10**18),
                "approved": approved,
                "deployed": deployed,
                "max_amount_per_swap": 100 * 10**6,
            }
        )
    return accounts


def generate_seed(seed: int = 7, sentiment: int = 18) -> Dict[str, object]:
    rng = random.Random(seed)
    accounts = _accounts(rng)
    expires_at = (datetime.now(timezone.utc) + timedelta(days=30)).isoformat()
    delegations = [
        {
            "id": f"del-{account['label']}",
            "user_address": account["user_address"],
            "smart_account_address": account["smart_account"],
            "delegation_data": _delegation_blob(str(account["smart_account"]), OPERATOR),
            "max_amount_per_swap": account["max_amount_per_swap"],
            "expires_at": expires_at,
            "target_asset": "weth",
        }
        for account in accounts
    ]
    return {
        "sentiment": {"value": sentiment, "classification": "Extreme Fear" if sentiment <= 25 else "Fear"},
        "tokens": {
            USDC: {"symbol": "USDC", "decimals": 6, "price_usd": 1.0},
            WETH: {"symbol": "ETH", "decimals": 18, "price_usd": 2500.0},
            CBBTC: {"symbol": "cbBTC", "decimals": 8, "price_usd": 60000.0},
        },
        "operator": {"address": OPERATOR, "native": 5 * 10**16},
        "contracts": {"permit2": PERMIT2, "router": ROUTER, "account_factory": ACCOUNT_FACTORY},
        "accounts": accounts,
        "delegations": delegations,
    }


__all__ = [
    "ACCOUNT_FACTORY",
    "CBBTC",
    "DEPLOYED_CODE",
    "OPERATOR",
    "PERMIT2",
    "ROUTER",
    "USDC",
    "WETH",
    "generate_seed",
]
