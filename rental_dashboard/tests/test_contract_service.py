import unittest
from datetime import date, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

from support import DatabaseTestCase

from rental_dashboard.services.contract_service import (
    BLANK,
    build_contract_data,
    build_contract_message,
    build_whatsapp_link,
    format_currency_brl,
    format_date_br,
    get_contract_data,
    normalize_phone,
    render_contract_html,
    safe_text,
)


def make_contract_order(**overrides):
    product = SimpleNamespace(Name="Câmera <Sony>", ReplacementValue=Decimal("8500.00"))
    fields = {
        "OrderID": 7,
        "OrderNumber": "LOC-007",
        "OwnerID": 1,
        "Status": "pending_signature",
        "FulfillmentType": "reservation",
        "DeliveryMethod": "pickup",
        "CustomerName": "Ana & Filhos",
        "CustomerCpf": None,
        "CustomerPhone": "(41) 99876-5432",
        "CustomerEmail": None,
        "DeliveryAddress": None,
        "StartDate": date(2024, 3, 1),
        "EndDate": date(2024, 3, 3),
        "PaymentMethod": "PIX",
        "TotalAmount": Decimal("1234.56"),
        "SignatureImage": None,
        "SignedAt": None,
        "SignerIp": None,
        "SignerUserAgent": None,
        "ContractToken": "abc123",
        "Items": [
            SimpleNamespace(
                ProductID=3,
                Product=product,
                Asset=SimpleNamespace(SerialNumber="SN-77"),
                UnitPrice=Decimal("205.76"),
                Quantity=2,
            )
        ],
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


class FormattingTests(unittest.TestCase):
    def test_currency_uses_brazilian_separators(self):
        self.assertEqual(format_currency_brl(Decimal("1234.56")), "R$ 1.234,56")
        self.assertEqual(format_currency_brl(0), "R$ 0,00")
        self.assertEqual(format_currency_brl("1000000"), "R$ 1.000.000,00")
        self.assertEqual(format_currency_brl(Decimal("-5.5")), "-R$ 5,50")

    def test_dates_and_missing_text(self):
        self.assertEqual(format_date_br(date(2024, 3, 1)), "01/03/2024")
        self.assertEqual(format_date_br(None), BLANK)
        self.assertEqual(safe_text("  "), BLANK)
        self.assertEqual(safe_text(" Curitiba "), "Curitiba")


class WhatsAppLinkTests(unittest.TestCase):
    def test_national_numbers_get_country_code(self):
        self.assertEqual(normalize_phone("(41) 99876-5432"), "5541998765432")
        self.assertEqual(normalize_phone("41 3333-4444"), "554133334444")

    def test_international_numbers_are_kept(self):
        self.assertEqual(normalize_phone("+55 41 99876-5432"), "5541998765432")
        self.assertEqual(normalize_phone("+44 20 7946 0958"), "442079460958")

    def test_missing_phone_is_a_validation_error(self):
        with self.assertRaises(ValueError):
            normalize_phone(None)
        with self.assertRaises(ValueError):
            build_whatsapp_link("--", "Oi")

    def test_message_is_url_encoded(self):
        order = make_contract_order()
        message = build_contract_message(order, "https://app.example.com/contracts/abc123")
        url = build_whatsapp_link(order.CustomerPhone, message)

        parsed = urlparse(url)
        self.assertEqual(parsed.netloc, "wa.me")
        self.assertEqual(parsed.path, "/5541998765432")
        self.assertNotIn(" ", url)
        self.assertEqual(parse_qs(parsed.query)["text"][0], message)
        self.assertIn("LOC-007", message)


class ContractDataTests(unittest.TestCase):
    def test_contract_data_is_preformatted(self):
        profile = SimpleNamespace(
            BusinessName="Locadora Sol",
            BusinessCnpj="12.345.678/0001-90",
            BusinessPhone=None,
            BusinessAddress="Rua XV, 100",
            BusinessCity="Curitiba",
            BusinessState="PR",
            SignatureImage=None,
        )
        data = build_contract_data(make_contract_order(), profile)

        self.assertEqual(data["durationDays"], 3)
        self.assertEqual(data["totalAmountDisplay"], "R$ 1.234,56")
        self.assertEqual(data["startDateDisplay"], "01/03/2024")
        self.assertEqual(data["statusLabel"], "Aguardando assinatura")
        item = data["items"][0]
        self.assertEqual(item["serialNumber"], "SN-77")
        self.assertEqual(item["replacementValueDisplay"], "R$ 8.500,00")
        self.assertEqual(item["lineTotal"], Decimal("1234.56"))
        self.assertFalse(data["signature"]["isSigned"])

    def test_html_escapes_user_text_and_fills_blanks(self):
        data = build_contract_data(make_contract_order(), None)
        html_text = render_contract_html(data, issued_on=date(2024, 3, 1))

        self.assertIn("Câmera &lt;Sony&gt;", html_text)
        self.assertIn("Ana &amp; Filhos", html_text)
        self.assertNotIn("<Sony>", html_text)
        self.assertIn(BLANK, html_text)
        self.assertIn("CLÁUSULA SÉTIMA", html_text)
        self.assertNotIn("REGISTRO DE ASSINATURA", html_text)

    def test_signed_contract_has_audit_block(self):
        order = make_contract_order(
            Status="reserved",
            SignedAt=datetime(2024, 2, 28, 14, 5, 9),
            SignatureImage="data:image/png;base64,AAA",
            SignerIp="198.51.100.4",
            SignerUserAgent="Mozilla/5.0",
        )
        html_text = render_contract_html(build_contract_data(order, None))
        self.assertIn("REGISTRO DE ASSINATURA", html_text)
        self.assertIn("28/02/2024 14:05:09", html_text)
        self.assertIn("198.51.100.4", html_text)


class ContractLookupTests(DatabaseTestCase):
    def test_lookup_by_token_joins_owner_profile(self):
        user = self.add_user()
        product = self.add_product(owner_id=user.UserID, replacement="3000.00")
        start = date.today() + timedelta(days=2)
        order = self.add_order(start, start + timedelta(days=1), [(product, 1)], owner_id=user.UserID, total="200.00")

        data = get_contract_data(self.db, token=order.ContractToken)
        self.assertEqual(data["orderNumber"], order.OrderNumber)
        self.assertEqual(data["owner"]["name"], "Locadora Sol")
        self.assertEqual(data["items"][0]["replacementValueDisplay"], "R$ 3.000,00")

    def test_unknown_token_is_not_found(self):
        with self.assertRaises(LookupError):
            get_contract_data(self.db, token="missing")


if __name__ == "__main__":
    unittest.main()
