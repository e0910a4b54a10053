"""
Receipt Renderer

Turns a signed receipt payload into a self-contained HTML "quittance de
paiement": printable, with the verification URL as an inline SVG QR code and
the signed payload embedded as JSON for offline checking.

Output depends only on the payload, the signature and the key id, so rendering
the same receipt twice produces byte-identical documents.
"""

import html
import json
from dataclasses import dataclass
from string import Template
from typing import Any, Dict

import segno

from ..core.errors import RenderError


@dataclass(frozen=True)
class Municipality:
    """Issuing authority printed in the receipt header."""
    name: str = "Système de Gestion de la Fourrière Municipale de Cotonou"
    address: str = "Hôtel de ville de Cotonou, Bénin"
    phone: str = "+229 21 30 30 30"
    currency: str = "FCFA"

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "currency": self.currency,
        }


_TEMPLATE = Template("""<!DOCTYPE html>
<html lang="fr">
<head>
<meta charset="utf-8">
<title>Quittance de paiement $receipt_number</title>
<style>
body { font-family: DejaVu Sans, Arial, sans-serif; font-size: 13px; color: #222; margin: 32px; }
header { border-bottom: 2px solid #1f4e79; margin-bottom: 16px; }
h1 { font-size: 18px; color: #1f4e79; margin: 0 0 4px 0; }
h2 { font-size: 14px; margin: 18px 0 6px 0; }
table { border-collapse: collapse; width: 100%; }
td { padding: 4px 6px; border-bottom: 1px solid #ddd; }
td.label { width: 40%; color: #555; }
.total td { font-weight: bold; }
.verify { margin-top: 20px; display: flex; gap: 16px; align-items: center; }
.code { font-family: monospace; font-size: 15px; letter-spacing: 1px; }
</style>
</head>
<body>
<header>
<h1>$municipality_name</h1>
<div>$municipality_address &middot; T&eacute;l. $municipality_phone</div>
</header>

<h2>Quittance de paiement N&deg; $receipt_number</h2>
<table>
<tr><td class="label">R&eacute;f&eacute;rence du paiement</td><td>$payment_reference</td></tr>
<tr><td class="label">Date du paiement</td><td>$paid_at</td></tr>
<tr><td class="label">Mode de paiement</td><td>$method</td></tr>
<tr class="total"><td class="label">Montant pay&eacute;</td><td>$amount $currency</td></tr>
</table>

<h2>V&eacute;hicule</h2>
<table>
<tr><td class="label">Immatriculation</td><td>$license_plate</td></tr>
<tr><td class="label">Cat&eacute;gorie</td><td>$category</td></tr>
<tr><td class="label">Description</td><td>$description</td></tr>
<tr><td class="label">Propri&eacute;taire</td><td>$owner_name</td></tr>
<tr><td class="label">Date de mise en fourri&egrave;re</td><td>$impounded_at</td></tr>
</table>

<h2>Frais &agrave; la date du paiement</h2>
<table>
<tr><td class="label">Frais d'enl&egrave;vement</td><td>$removal_fee $currency</td></tr>
<tr><td class="label">Gardiennage ($days_elapsed jour(s) &times; $daily_rate)</td><td>$storage_fee $currency</td></tr>
<tr class="total"><td class="label">Total d&ucirc;</td><td>$total_due $currency</td></tr>
</table>

<div class="verify">
$qr_svg
<div>
<div>Code de v&eacute;rification</div>
<div class="code">$verification_code</div>
<div><a href="$verification_url">$verification_url</a></div>
</div>
</div>

<script type="application/json" id="receipt-payload">$payload_json</script>
<script type="application/json" id="receipt-signature">$signature_json</script>
</body>
</html>
""")


def format_amount(amount: int) -> str:
    """30000 -> '30 000'."""
    return f"{amount:,}".replace(",", " ")


def qr_svg(data: str) -> str:
    """Inline SVG QR code for `data`."""
    try:
        qr = segno.make(data, error="m", micro=False)
    except ValueError as e:
        raise RenderError(f"Cannot encode QR code: {e}") from e
    return qr.svg_inline(scale=4, border=2)


def _script_json(value: Any) -> str:
    # Keep "</script>" sequences in free-text fields from closing the element.
    return json.dumps(value, sort_keys=True, ensure_ascii=False).replace("</", "<\\/")


class ReceiptRenderer:
    """Renders signed receipt payloads as HTML."""

    content_type = "text/html; charset=utf-8"
    extension = "html"

    def render(self, payload: Dict[str, Any], signature: str, key_id: str, verification_code: str) -> bytes:
        try:
            payment = payload["payment"]
            vehicle = payload["vehicle"]
            fee = payload["fee"]
            municipality = payload["municipality"]
            verification_url = payload["verification_url"]
        except KeyError as e:
            raise RenderError(f"Receipt payload is missing {e.args[0]!r}") from e

        description = " ".join(
            part for part in (vehicle.get("make"), vehicle.get("model"), vehicle.get("color")) if part
        ) or "-"

        fields = {
            "receipt_number": payload["receipt_number"],
            "municipality_name": municipality["name"],
            "municipality_address": municipality["address"],
            "municipality_phone": municipality["phone"],
            "currency": municipality["currency"],
            "payment_reference": payment.get("reference") or payload["receipt_number"],
            "paid_at": payment["paid_at"],
            "method": payment["method_label"],
            "amount": format_amount(payment["amount"]),
            "license_plate": vehicle["license_plate"],
            "category": vehicle["category_label"],
            "description": description,
            "owner_name": vehicle["owner_name"],
            "impounded_at": vehicle["impounded_at"],
            "removal_fee": format_amount(fee["removal_fee"]),
            "days_elapsed": fee["days_elapsed"],
            "daily_rate": format_amount(fee["daily_rate"]),
            "storage_fee": format_amount(fee["storage_fee"]),
            "total_due": format_amount(fee["total_due"]),
            "verification_code": verification_code,
            "verification_url": verification_url,
        }
        escaped = {k: html.escape(str(v)) for k, v in fields.items()}

        document = _TEMPLATE.substitute(
            escaped,
            qr_svg=qr_svg(verification_url),
            payload_json=_script_json(payload),
            signature_json=_script_json({"algorithm": "Ed25519", "key_id": key_id, "signature": signature}),
        )
        return document.encode("utf-8")
