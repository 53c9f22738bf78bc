"""
Contract data and messaging helpers.

The rendering side (PDF, print) lives outside this service; what it needs is
a plain structure with every currency and date already formatted, plus the
raw values for anything that wants to compute. ``render_contract_html`` is the
one built-in renderer and produces the clause-based rental agreement.
"""

from __future__ import annotations

import html
import os
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from rental_dashboard.models.rental_models import Order, OrderItem, Profile
from rental_dashboard.services.order_state_service import STATUS_LABELS, normalize_status
from rental_dashboard.services.pricing_service import coerce_date, rental_days, to_decimal


BLANK = "______"
DEFAULT_COUNTRY_CODE = (os.environ.get("DEFAULT_COUNTRY_CODE") or "55").strip()
PUBLIC_BASE_URL = (os.environ.get("PUBLIC_BASE_URL") or "http://localhost:5173").rstrip("/")


def format_currency_brl(value) -> str:
    amount = to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    whole, cents = f"{abs(amount):.2f}".split(".")
    grouped = f"{int(whole):,}".replace(",", ".")
    return f"{sign}R$ {grouped},{cents}"


def format_date_br(value: date | datetime | str | None) -> str:
    parsed = coerce_date(value)
    if parsed is None:
        return BLANK
    return parsed.strftime("%d/%m/%Y")


def format_datetime_br(value: datetime | None) -> str:
    if value is None:
        return BLANK
    return value.strftime("%d/%m/%Y %H:%M:%S")


def safe_text(value: str | None) -> str:
    text = (value or "").strip()
    return text if text else BLANK


def normalize_phone(raw: str | None, country_code: str | None = None) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if not digits:
        raise ValueError("Customer phone number is required to send a message.")
    if len(digits) in (10, 11):
        digits = f"{country_code or DEFAULT_COUNTRY_CODE}{digits}"
    return digits


def build_whatsapp_link(phone: str | None, message: str, country_code: str | None = None) -> str:
    return f"https://wa.me/{normalize_phone(phone, country_code)}?text={quote(message, safe='')}"


def build_contract_url(order: Order, base_url: str | None = None) -> str:
    return f"{(base_url or PUBLIC_BASE_URL).rstrip('/')}/contracts/{order.ContractToken}"


def build_contract_message(order: Order, contract_url: str) -> str:
    return (
        f"Olá {order.CustomerName}! 📦\n"
        f"Aqui está o link do seu contrato de locação #{order.OrderNumber}:\n"
        f"{contract_url}\n\n"
        "Por favor, confira e assine."
    )


def load_contract_order(db: Session, *, order_id: int | None = None, token: str | None = None) -> Order:
    stmt = select(Order).options(
        selectinload(Order.Items).selectinload(OrderItem.Product),
        selectinload(Order.Items).selectinload(OrderItem.Asset),
    )
    if order_id is not None:
        stmt = stmt.where(Order.OrderID == order_id)
    elif token:
        stmt = stmt.where(Order.ContractToken == token)
    else:
        raise LookupError("Order not found.")
    order = db.execute(stmt).scalars().first()
    if not order:
        raise LookupError("Order not found.")
    return order


def get_contract_data(db: Session, *, order_id: int | None = None, token: str | None = None) -> dict:
    """Order, items and the owning user's company profile in one structure."""
    order = load_contract_order(db, order_id=order_id, token=token)
    profile = db.get(Profile, order.OwnerID) if order.OwnerID else None
    return build_contract_data(order, profile)


def build_contract_data(order: Order, profile: Profile | None) -> dict:
    duration = rental_days(order.StartDate, order.EndDate)
    status = normalize_status(order.Status)
    items = []
    for item in order.Items:
        product = item.Product
        unit_price = to_decimal(item.UnitPrice)
        replacement = to_decimal(product.ReplacementValue if product else None)
        items.append(
            {
                "name": product.Name if product else f"Produto {item.ProductID}",
                "quantity": int(item.Quantity or 0),
                "serialNumber": item.Asset.SerialNumber if item.Asset else None,
                "unitPrice": unit_price,
                "unitPriceDisplay": format_currency_brl(unit_price),
                "lineTotal": unit_price * int(item.Quantity or 0) * duration,
                "lineTotalDisplay": format_currency_brl(unit_price * int(item.Quantity or 0) * duration),
                "replacementValue": replacement,
                "replacementValueDisplay": format_currency_brl(replacement),
            }
        )

    return {
        "orderID": order.OrderID,
        "orderNumber": order.OrderNumber,
        "status": status.value,
        "statusLabel": STATUS_LABELS[status],
        "fulfillmentType": order.FulfillmentType,
        "deliveryMethod": order.DeliveryMethod,
        "owner": {
            "name": profile.BusinessName if profile else None,
            "document": profile.BusinessCnpj if profile else None,
            "phone": profile.BusinessPhone if profile else None,
            "address": profile.BusinessAddress if profile else None,
            "city": profile.BusinessCity if profile else None,
            "state": profile.BusinessState if profile else None,
            "signatureImage": profile.SignatureImage if profile else None,
        },
        "customer": {
            "name": order.CustomerName,
            "document": order.CustomerCpf,
            "phone": order.CustomerPhone,
            "email": order.CustomerEmail,
            "address": order.DeliveryAddress,
        },
        "startDate": order.StartDate.isoformat(),
        "endDate": order.EndDate.isoformat(),
        "startDateDisplay": format_date_br(order.StartDate),
        "endDateDisplay": format_date_br(order.EndDate),
        "durationDays": duration,
        "paymentMethod": order.PaymentMethod,
        "totalAmount": to_decimal(order.TotalAmount),
        "totalAmountDisplay": format_currency_brl(order.TotalAmount),
        "items": items,
        "signature": {
            "isSigned": order.SignedAt is not None,
            "image": order.SignatureImage,
            "signedAt": order.SignedAt.isoformat() if order.SignedAt else None,
            "signedAtDisplay": format_datetime_br(order.SignedAt) if order.SignedAt else None,
            "signerIp": order.SignerIp,
            "signerUserAgent": order.SignerUserAgent,
        },
    }


def _e(value) -> str:
    return html.escape(str(value), quote=True)


def render_contract_html(data: dict, issued_on: date | None = None) -> str:
    owner = data["owner"]
    customer = data["customer"]
    owner_name = safe_text(owner.get("name"))
    owner_city = safe_text(owner.get("city"))
    customer_name = safe_text(customer.get("name"))

    object_lines = "".join(
        f"<li>{_e(item['name'])} (Qtd: {item['quantity']})"
        + (f" - Série: {_e(item['serialNumber'])}" if item.get("serialNumber") else "")
        + "</li>"
        for item in data["items"]
    )
    replacement_lines = "<br>".join(
        f"{_e(item['name'])} (Qtd: {item['quantity']}) (Valor Reposição: {_e(item['replacementValueDisplay'])})"
        for item in data["items"]
    )

    signature_block = ""
    signature = data.get("signature") or {}
    if signature.get("isSigned"):
        signature_block = (
            '<h2>REGISTRO DE ASSINATURA ELETRÔNICA</h2>'
            f"<p>Assinado em: {_e(signature.get('signedAtDisplay') or BLANK)}</p>"
            f"<p>IP: {_e(signature.get('signerIp') or 'N/A')}</p>"
            f"<p>User Agent: {_e(signature.get('signerUserAgent') or 'N/A')}</p>"
        )

    owner_sig = owner.get("signatureImage")
    customer_sig = signature.get("image")
    owner_sig_html = f'<img class="signature" src="{_e(owner_sig)}" alt="">' if owner_sig else ""
    customer_sig_html = f'<img class="signature" src="{_e(customer_sig)}" alt="">' if customer_sig else ""

    return f"""<!DOCTYPE html>
<html lang="pt-BR">
<head>
<meta charset="utf-8">
<title>Contrato {_e(data['orderNumber'])}</title>
<style>
  body {{ font-family: Arial, sans-serif; line-height: 1.6; max-width: 800px; margin: 0 auto; padding: 20px; }}
  h1 {{ text-align: center; color: #1e40af; font-size: 24px; }}
  h2 {{ font-size: 18px; margin-top: 25px; border-bottom: 1px solid #ccc; padding-bottom: 5px; }}
  ul {{ list-style-type: none; padding-left: 0; }}
  .data-field {{ font-weight: bold; }}
  .warning {{ color: #b91c1c; font-weight: bold; }}
  .signature-area {{ margin-top: 50px; display: flex; justify-content: space-around; text-align: center; }}
  .signature {{ max-height: 80px; }}
</style>
</head>
<body>
<h1>CONTRATO DE LOCAÇÃO DE EQUIPAMENTOS</h1>
<p>Pedido: <span class="data-field">#{_e(data['orderNumber'])}</span></p>

<h2>QUALIFICAÇÃO DAS PARTES</h2>
<p><strong>LOCADOR:</strong> <span class="data-field">{_e(owner_name)}</span>, inscrito no CPF/CNPJ sob o nº
<span class="data-field">{_e(safe_text(owner.get('document')))}</span>, com endereço na
<span class="data-field">{_e(safe_text(owner.get('address')))}</span>, doravante denominado simplesmente LOCADOR.</p>
<p><strong>LOCATÁRIA:</strong> <span class="data-field">{_e(customer_name)}</span>, inscrita no CPF/CNPJ sob o nº
<span class="data-field">{_e(safe_text(customer.get('document')))}</span>, com endereço na
<span class="data-field">{_e(safe_text(customer.get('address')))}</span>.</p>

<h2>CLÁUSULA PRIMEIRA – DO OBJETO</h2>
<p>O presente contrato tem por objeto a locação dos equipamentos de propriedade do LOCADOR, discriminados abaixo:</p>
<ul>{object_lines}</ul>

<h2>CLÁUSULA SEGUNDA – DO PRAZO</h2>
<p>A locação terá a duração de <span class="data-field">{data['durationDays']}</span> dias, iniciando-se em
<span class="data-field">{_e(data['startDateDisplay'])}</span> e encerrando-se em
<span class="data-field">{_e(data['endDateDisplay'])}</span>, data em que os equipamentos deverão ser devolvidos
nas mesmas condições em que foram entregues.</p>

<h2>CLÁUSULA TERCEIRA – DO PREÇO E PAGAMENTO</h2>
<p>Pela locação do objeto deste contrato, a LOCATÁRIA pagará ao LOCADOR o valor total de
<span class="data-field">{_e(data['totalAmountDisplay'])}</span>.</p>
<p><strong>Forma de Pagamento:</strong> <span class="data-field">{_e(safe_text(data.get('paymentMethod')))}</span>.</p>
<p>O atraso no pagamento implicará em multa de 2% (dois por cento) sobre o débito e juros de 1% (um por cento) ao mês.</p>

<h2>CLÁUSULA QUARTA – DA CONSERVAÇÃO E DANOS</h2>
<p>A LOCATÁRIA declara receber os equipamentos em perfeito estado de conservação e funcionamento.</p>
<p>Em caso de danos causados por mau uso, quebra, exposição a líquidos ou abertura do equipamento sem autorização de
<span class="data-field">{_e(owner_name)}</span>, a LOCATÁRIA arcará com os custos de reparo.</p>
<p class="warning">Em caso de perda, furto ou roubo, a LOCATÁRIA deverá indenizar o LOCADOR no valor de reposição de:<br>
<span class="data-field">{replacement_lines}</span></p>

<h2>CLÁUSULA QUINTA – DAS RESPONSABILIDADES</h2>
<p>A LOCATÁRIA é a única responsável pelo uso dos equipamentos perante as autoridades, devendo respeitar a legislação vigente.</p>

<h2>CLÁUSULA SEXTA – DA RESCISÃO</h2>
<p>O contrato poderá ser rescindido caso qualquer uma das partes descumpra as cláusulas aqui estabelecidas.</p>

<h2>CLÁUSULA SÉTIMA – DO FORO</h2>
<p>Fica eleito o foro da comarca de <span class="data-field">{_e(owner_city)}</span> para dirimir eventuais dúvidas sobre este contrato.</p>

<p style="text-align: center; margin-top: 40px;">{_e(owner_city)}, {_e(format_date_br(issued_on or date.today()))}.</p>

<div class="signature-area">
  <div>{owner_sig_html}<p>{_e(owner_name)} (Locador)</p></div>
  <div>{customer_sig_html}<p>{_e(customer_name)} (Locatária)</p></div>
</div>
{signature_block}
</body>
</html>
"""
