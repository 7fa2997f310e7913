"""
Simplified UBL 2.1 invoice construction.

Usage::

    tree = build_invoice_document(InvoiceData(**adapt_invoice_fields(raw)))
    stamped, result = stamper.stamp(tree, entity_id, key_material)
"""

from __future__ import annotations

from decimal import Decimal

from lxml import etree

from invoice_stamp.core.ubl import NSMAP, cac, cbc
from invoice_stamp.modules.invoices.adapter import InvoiceTotals, calculate_totals, money
from invoice_stamp.modules.invoices.schemas import (
    INVOICE_TYPE_CODE,
    INVOICE_TYPE_FLAGS,
    InvoiceData,
)
from invoice_stamp.modules.stamping.schemas import InvoiceSummary

UBL_VERSION = "2.1"
PROFILE_ID = "reporting:1.0"


def _amount(value: Decimal) -> str:
    return f"{money(value):.2f}"


def _quantity(value: Decimal) -> str:
    return format(value.normalize(), "f")


def resolve_totals(invoice: InvoiceData) -> InvoiceTotals:
    """Use explicit totals when given, otherwise compute them from the lines."""
    computed = calculate_totals(invoice.lines)
    gross = invoice.invoice_total if invoice.invoice_total is not None else computed.gross_total
    vat = invoice.vat_total if invoice.vat_total is not None else computed.vat_total
    return InvoiceTotals(net_total=money(gross - vat), vat_total=money(vat), gross_total=money(gross))


def _issue_parts(invoice: InvoiceData) -> tuple[str, str]:
    issued = invoice.issue_datetime
    return issued.date().isoformat(), issued.strftime("%H:%M:%S")


def _text(parent: etree._Element, tag: str, value: str, **attrs: str) -> etree._Element:
    element = etree.SubElement(parent, tag, attrs)
    element.text = value
    return element


def _build_supplier(root: etree._Element, invoice: InvoiceData) -> None:
    party = etree.SubElement(etree.SubElement(root, cac("AccountingSupplierParty")), cac("Party"))
    if invoice.seller_crn:
        _text(etree.SubElement(party, cac("PartyIdentification")), cbc("ID"), invoice.seller_crn, schemeID="CRN")
    _text(etree.SubElement(party, cac("PartyName")), cbc("Name"), invoice.seller_name)
    tax_scheme = etree.SubElement(party, cac("PartyTaxScheme"))
    _text(tax_scheme, cbc("CompanyID"), invoice.seller_vat)
    _text(etree.SubElement(tax_scheme, cac("TaxScheme")), cbc("ID"), "VAT")
    _text(etree.SubElement(party, cac("PartyLegalEntity")), cbc("RegistrationName"), invoice.seller_name)


def _build_lines(root: etree._Element, invoice: InvoiceData) -> None:
    for index, line in enumerate(invoice.lines, start=1):
        element = etree.SubElement(root, cac("InvoiceLine"))
        _text(element, cbc("ID"), str(index))
        _text(element, cbc("InvoicedQuantity"), _quantity(line.quantity))
        _text(
            element,
            cbc("LineExtensionAmount"),
            _amount(line.price * line.quantity),
            currencyID=invoice.currency,
        )
        _text(etree.SubElement(element, cac("Item")), cbc("Name"), line.name)
        _text(
            etree.SubElement(element, cac("Price")),
            cbc("PriceAmount"),
            _amount(line.price),
            currencyID=invoice.currency,
        )


def build_invoice_document(invoice: InvoiceData) -> etree._ElementTree:
    """Build an unstamped UBL invoice tree from ``invoice``."""
    totals = resolve_totals(invoice)
    issue_date, issue_time = _issue_parts(invoice)

    root = etree.Element(f"{{{NSMAP[None]}}}Invoice", nsmap=NSMAP)
    _text(root, cbc("UBLVersionID"), UBL_VERSION)
    _text(root, cbc("ProfileID"), PROFILE_ID)
    _text(root, cbc("ID"), invoice.invoice_number or str(invoice.uuid))
    _text(root, cbc("UUID"), str(invoice.uuid))
    _text(root, cbc("IssueDate"), issue_date)
    _text(root, cbc("IssueTime"), issue_time)
    _text(
        root,
        cbc("InvoiceTypeCode"),
        INVOICE_TYPE_CODE,
        name=INVOICE_TYPE_FLAGS[invoice.invoice_type],
    )
    _text(root, cbc("DocumentCurrencyCode"), invoice.currency)

    _build_supplier(root, invoice)

    _text(
        etree.SubElement(root, cac("TaxTotal")),
        cbc("TaxAmount"),
        _amount(totals.vat_total),
        currencyID=invoice.currency,
    )

    monetary = etree.SubElement(root, cac("LegalMonetaryTotal"))
    _text(monetary, cbc("LineExtensionAmount"), _amount(totals.net_total), currencyID=invoice.currency)
    _text(monetary, cbc("TaxExclusiveAmount"), _amount(totals.net_total), currencyID=invoice.currency)
    _text(monetary, cbc("TaxInclusiveAmount"), _amount(totals.gross_total), currencyID=invoice.currency)
    _text(monetary, cbc("PayableAmount"), _amount(totals.gross_total), currencyID=invoice.currency)

    _build_lines(root, invoice)
    return etree.ElementTree(root)


def summary_from_invoice(invoice: InvoiceData) -> InvoiceSummary:
    """QR summary matching what ``build_invoice_document`` writes."""
    totals = resolve_totals(invoice)
    issue_date, issue_time = _issue_parts(invoice)
    return InvoiceSummary(
        seller_name=invoice.seller_name,
        seller_vat_number=invoice.seller_vat,
        timestamp=f"{issue_date}T{issue_time}",
        invoice_total=_amount(totals.gross_total),
        vat_total=_amount(totals.vat_total),
    )
