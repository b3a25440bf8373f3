"""
PIX BR Code builder.

The payment code a wallet app scans or pastes is an EMV Merchant-Presented
QR payload: a sequence of ID/length/value fields terminated by a CRC16
checksum field. The layout is fixed by the Brazilian Central Bank; wallets
reject codes whose checksum or field lengths are off by a single byte.
"""

import re
import unicodedata
from uuid import UUID

# Top-level field identifiers
ID_PAYLOAD_FORMAT = "00"
ID_POINT_OF_INITIATION = "01"
ID_MERCHANT_ACCOUNT = "26"
ID_MERCHANT_CATEGORY = "52"
ID_CURRENCY = "53"
ID_AMOUNT = "54"
ID_COUNTRY = "58"
ID_MERCHANT_NAME = "59"
ID_MERCHANT_CITY = "60"
ID_ADDITIONAL_DATA = "62"
ID_CRC = "63"

# Nested identifiers
ID_GUI = "00"
ID_KEY = "01"
ID_TXID = "05"

PIX_GUI = "br.gov.bcb.pix"
CURRENCY_BRL = "986"
MAX_NAME_LENGTH = 25
MAX_CITY_LENGTH = 15
MAX_TXID_LENGTH = 25

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_NON_PRINTABLE = re.compile(r"[^A-Z0-9 .\-]")


def crc16_ccitt(data: str) -> str:
    """CRC16-CCITT-FALSE (poly 0x1021, init 0xFFFF) as 4 upper-case hex digits."""
    crc = 0xFFFF
    for byte in data.encode("utf-8"):
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return f"{crc:04X}"


def emv_field(field_id: str, value: str) -> str:
    """Encode one ID + two-digit length + value field."""
    if len(value) > 99:
        raise ValueError(f"EMV field {field_id} too long: {len(value)} characters")
    return f"{field_id}{len(value):02d}{value}"


def _sanitize(text: str, max_length: int) -> str:
    """Upper-case ASCII without accents, truncated to the field limit."""
    normalized = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    cleaned = _NON_PRINTABLE.sub("", normalized.upper()).strip()
    return cleaned[:max_length]


def txid_for(payment_id: UUID) -> str:
    """Transaction id derived from the payment id (alphanumeric, max 25)."""
    return _NON_ALNUM.sub("", payment_id.hex)[:MAX_TXID_LENGTH].upper()


def format_amount(amount_minor: int) -> str:
    """Centavos to the decimal string the code carries (590 -> "5.90")."""
    if amount_minor <= 0:
        raise ValueError(f"Amount must be positive: {amount_minor}")
    return f"{amount_minor // 100}.{amount_minor % 100:02d}"


def build_br_code(
    *,
    pix_key: str,
    amount_minor: int,
    merchant_name: str,
    merchant_city: str,
    txid: str,
) -> str:
    """Assemble a single-use PIX BR Code with its CRC trailer."""
    merchant_account = emv_field(ID_GUI, PIX_GUI) + emv_field(ID_KEY, pix_key)
    additional_data = emv_field(ID_TXID, txid[:MAX_TXID_LENGTH] or "***")

    payload = "".join(
        [
            emv_field(ID_PAYLOAD_FORMAT, "01"),
            emv_field(ID_POINT_OF_INITIATION, "12"),
            emv_field(ID_MERCHANT_ACCOUNT, merchant_account),
            emv_field(ID_MERCHANT_CATEGORY, "0000"),
            emv_field(ID_CURRENCY, CURRENCY_BRL),
            emv_field(ID_AMOUNT, format_amount(amount_minor)),
            emv_field(ID_COUNTRY, "BR"),
            emv_field(ID_MERCHANT_NAME, _sanitize(merchant_name, MAX_NAME_LENGTH)),
            emv_field(ID_MERCHANT_CITY, _sanitize(merchant_city, MAX_CITY_LENGTH)),
            emv_field(ID_ADDITIONAL_DATA, additional_data),
        ]
    )
    # The checksum covers its own ID and length
    payload += f"{ID_CRC}04"
    return payload + crc16_ccitt(payload)


def parse_fields(code: str) -> dict[str, str]:
    """Split a top-level EMV payload into {field_id: value}."""
    fields: dict[str, str] = {}
    pos = 0
    while pos < len(code):
        if pos + 4 > len(code):
            raise ValueError(f"Truncated EMV field at offset {pos}")
        field_id = code[pos : pos + 2]
        length = int(code[pos + 2 : pos + 4])
        value = code[pos + 4 : pos + 4 + length]
        if len(value) != length:
            raise ValueError(f"EMV field {field_id} shorter than declared length")
        fields[field_id] = value
        pos += 4 + length
    return fields


def verify_crc(code: str) -> bool:
    """True when the trailing CRC field matches the payload."""
    if len(code) < 8 or code[-8:-4] != f"{ID_CRC}04":
        return False
    return crc16_ccitt(code[:-4]) == code[-4:].upper()
