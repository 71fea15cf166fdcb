"""Per-asset balance aggregation over transaction outputs.

Ledger quantities routinely exceed 2**53, so everything is summed as Python
integers parsed from decimal strings and written back as decimal strings.
"""

from typing import Dict, Iterable, List

from .models import Asset, AssetBalance, PaymentAddressSummary, TransactionOutput

# Token asset ids are hex encoded policy id + asset name, never "ada"
ADA_ASSET_ID = "ada"


def ada_asset() -> Asset:
    return Asset(assetId=ADA_ASSET_ID, assetName=ADA_ASSET_ID, name=ADA_ASSET_ID, policyId="")


def aggregate_asset_balances(utxos: Iterable[TransactionOutput]) -> List[AssetBalance]:
    """Sum lovelace and token quantities into one balance per asset.

    Args:
        utxos: Transaction outputs to fold

    Returns:
        One AssetBalance per distinct asset id, in first-seen order
    """
    totals: Dict[str, int] = {}
    assets: Dict[str, Asset] = {}

    for utxo in utxos:
        if ADA_ASSET_ID not in totals:
            assets[ADA_ASSET_ID] = ada_asset()
            totals[ADA_ASSET_ID] = 0
        totals[ADA_ASSET_ID] += int(utxo.value)

        for token in utxo.tokens:
            asset_id = token.asset.asset_id
            if asset_id not in totals:
                assets[asset_id] = token.asset.model_copy()
                totals[asset_id] = 0
            totals[asset_id] += int(token.quantity)

    return [
        AssetBalance(asset=assets[asset_id], quantity=str(total))
        for asset_id, total in totals.items()
    ]


def summarize_payment_address(
    utxos: Iterable[TransactionOutput],
    utxos_count: int,
) -> PaymentAddressSummary:
    """Build the address summary; ``utxos_count`` comes from a separate aggregate."""
    return PaymentAddressSummary(
        assetBalances=aggregate_asset_balances(utxos),
        utxosCount=utxos_count,
    )
