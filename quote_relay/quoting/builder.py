"""Build the pricing request from the extracted quote fields."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config_store import ConfigStore
from ..models import ExtractedQuote, safe_number

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_CODE = "C00014"
SINGLE_SIDED_KEYWORDS = ("single side", "1s", "1 side", "one side", " ss ")
FALLBACK_SECTION_OPERATION = {"OperationName": "CUT - Kongsberg Table Cutter", "Group": "Die cut to shape"}
DEFAULT_SECTION_OPERATION = {"OperationName": "CUT - Kongsberg Table Cutter", "Group": "Square Cut"}
INCLUDES_LINE = "Includes: Bulk packed and Wrapped"


def _number(value: float | None) -> int | float | None:
    """Render whole floats as ints so ``870.0`` is sent as ``870``."""
    if value is None:
        return None
    return int(value) if float(value).is_integer() else value


def _rule_matches(op: Any, text: str) -> bool:
    """Plain strings and rule-less entries always apply; otherwise the rule must occur in ``text``."""
    if isinstance(op, str):
        return True
    if not isinstance(op, dict):
        return False
    rule = op.get("Rule")
    if not isinstance(rule, str) or not rule.strip():
        return True
    return rule.strip().lower() in text


def _operation_item(op: Any) -> Dict[str, str]:
    if isinstance(op, str):
        return {"OperationName": op}
    item = {"OperationName": str(op.get("OperationName") or "")}
    group = op.get("Group")
    if isinstance(group, str) and group.strip():
        item["Group"] = group.strip()
    return item


def job_operations(config: ConfigStore, print_text: str, raw_text: str) -> List[Dict[str, str]]:
    """Job operations whose rule appears in the print field or anywhere in the email."""
    text = " ".join(part for part in (print_text.lower(), raw_text.lower()) if part)
    items = [_operation_item(op) for op in config.operations() if _rule_matches(op, text)]
    return [item for item in items if item["OperationName"].strip()]


def section_operations(config: ConfigStore, finish: str) -> List[Dict[str, str]]:
    """Section operations whose rule appears in the finish field."""
    ops = config.section_operations()
    if ops is None:
        return [dict(DEFAULT_SECTION_OPERATION)]
    matched = [op for op in ops if _rule_matches(op, finish.lower())]
    if not matched:
        logger.debug("No section operation rule matched finish %r, using fallback", finish)
        return [dict(FALLBACK_SECTION_OPERATION)]
    return [_operation_item(op) for op in matched]


def is_single_sided(print_text: str) -> bool:
    lowered = print_text.lower()
    return any(keyword in lowered for keyword in SINGLE_SIDED_KEYWORDS)


def build_job_title(extracted: ExtractedQuote, raw_text: str) -> Optional[str]:
    """Subject text after ``#`` (minus a trailing ``(ADS)``) joined with the product."""
    subject_line = raw_text.split("\n", 1)[0].strip()
    subject_part = ""
    if "#" in subject_line:
        subject_part = subject_line[subject_line.index("#") + 1:].strip()
        if subject_part.endswith("(ADS)"):
            subject_part = subject_part[:-5].strip()
    parts = [part for part in (subject_part, extracted.prod) if part]
    return " / ".join(parts) if parts else None


def build_quote_request(
    extracted: ExtractedQuote,
    raw_text: str,
    config: ConfigStore,
    *,
    customer_code: str = DEFAULT_CUSTOMER_CODE,
    quote_contact: Optional[Dict[str, Any]] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Return ``(request, stock_mapping_used)`` for the pricing backend."""
    defaults = config.default_settings()
    width = _number(extracted.width)
    height = _number(extracted.height)
    quantity = _number(safe_number(extracted.quantity) or 0)

    section: Dict[str, Any] = {
        "SectionType": "Single-Section",
        "StockCode": defaults["defaultStockCode"],
        "ProcessFront": defaults["defaultProcessFront"],
        "ProcessReverse": defaults["defaultProcessReverse"],
        "SectionSizeWidth": width,
        "SectionSizeHeight": height,
        "FoldCatalog": "Flat Product",
        "Pages": 2,
        "SectionOperations": section_operations(config, extracted.finish),
        "SideOperations": [],
    }

    stock_mapping_used = False
    if extracted.stock:
        mapped = config.lookup_stock(extracted.stock)
        logger.debug("Stock %r mapped to %s", extracted.stock, mapped)
        if mapped:
            section["StockCode"] = mapped["value"]
            if mapped["processFront"]:
                section["ProcessFront"] = mapped["processFront"]
            if is_single_sided(extracted.print):
                section["ProcessReverse"] = "None"
            elif mapped["processReverse"]:
                section["ProcessReverse"] = mapped["processReverse"]
            stock_mapping_used = True

    description: List[str] = []
    if width is not None and height is not None:
        description.append(f"Finished Size: {width} x {height}")
    if extracted.stock:
        description.append(f"Substrate: {extracted.stock}")
    if section["ProcessFront"]:
        description.append(f"Mode: {section['ProcessFront']}")
    description.append(INCLUDES_LINE)

    selected: Dict[str, Any] = {"Quantity": quantity, "Kinds": 1}
    kinds = extracted.kinds
    if kinds:
        adv = []
        for kind in kinds:
            if len(kinds) == 1 and not kind.count:
                qty = quantity
            else:
                qty = _number(kind.count)
            adv.append({"Name": kind.kind, "Quantity": qty, "Sections": [{"SectionNumber": 1}]})
        extra = extracted.model_extra or {}
        selected["Kinds"] = 0
        selected["TargetRetailPrice"] = safe_number(extra.get("TargetRetailPrice")) or 0
        selected["TargetWholesalePrice"] = safe_number(extra.get("TargetWholesalePrice")) or 0
        selected["AdvancedKinds"] = {"KindsArePacks": False, "Kinds": adv}
        total = sum(k["Quantity"] or 0 for k in adv)
        if total > 0:
            selected["Quantity"] = total

    request = {
        "CustomProduct": {
            "ProductCategory": None,
            "FinishSizeWidth": width,
            "FinishSizeHeight": height,
            "Sections": [section],
            "JobOperations": job_operations(config, extracted.print, raw_text),
        },
        "SelectedQuantity": selected,
        "QuoteContact": dict(quote_contact or {}),
        "Deliveries": [],
        "TargetFreightPrice": "",
        "CustomerCode": customer_code or DEFAULT_CUSTOMER_CODE,
        "AcceptQuote": False,
        "JobDescription": "\n".join(description),
        "JobTitle": build_job_title(extracted, raw_text),
        "Notes": None,
        "CustomerExpectedDate": None,
        "JobDueDate": None,
        "CustomerReference": extracted.rfq_no or None,
    }
    return request, stock_mapping_used
