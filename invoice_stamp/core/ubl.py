"""UBL 2.1 namespaces and reserved identifiers shared by builders and stampers."""

INVOICE_NS = "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2"
CAC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2"
CBC_NS = "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2"
DS_NS = "http://www.w3.org/2000/09/xmldsig#"

NSMAP: dict[str | None, str] = {
    None: INVOICE_NS,
    "cac": CAC_NS,
    "cbc": CBC_NS,
}

SIGNATURE_ID = "urn:oasis:names:specification:ubl:signature:Invoice"
SIGNATURE_METHOD = "urn:oasis:names:specification:ubl:dsig:enveloped:xades"


def cac(name: str) -> str:
    return f"{{{CAC_NS}}}{name}"


def cbc(name: str) -> str:
    return f"{{{CBC_NS}}}{name}"


def ds(name: str) -> str:
    return f"{{{DS_NS}}}{name}"
