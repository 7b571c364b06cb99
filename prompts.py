"""
prompts.py - Instruction text sent to the generative vision providers.

Two output contracts:
    json_instruction(context)     -> structured JSON object (Gemini)
    labeled_instruction(context)  -> labeled lines with a confidence band (Claude)

An ExtractionContext optionally carries a bank hint and a few learned
examples for that bank; account numbers in examples are always masked.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from logging_config import mask_account
from models import PatternRecord
from normalize import canonicalize_bank_name


@dataclass(frozen=True)
class BankProfile:
    bank_name: str
    color_scheme: str
    logo_description: str
    account_number_format: str


BANK_PROFILES: dict[str, BankProfile] = {
    profile.bank_name: profile
    for profile in (
        BankProfile("GTBank", "Orange and White", "GT logo with orange/red background", "10 digits starting with 0"),
        BankProfile("Access Bank", "Orange and Blue", "Access logo with orange diamond", "10 digits"),
        BankProfile("Zenith Bank", "Blue and White", "Zenith logo with blue design", "10 digits starting with 2"),
        BankProfile("United Bank for Africa", "Red and White", "UBA logo with red background", "10 digits starting with 2"),
        BankProfile("First Bank", "Blue and Gold", "First Bank logo with blue and gold", "10 digits starting with 3"),
        BankProfile("Moniepoint", "Blue and White", "Moniepoint logo with blue design", "10 digits starting with 7"),
        BankProfile("Opay", "Green and White", "Opay logo with green background", "10 digits starting with 8"),
        BankProfile("Kuda Bank", "Purple and White", "Kuda logo with purple design", "10 digits"),
    )
}


@dataclass
class ExtractionContext:
    """Per-request hints that sharpen the provider instruction."""

    bank_hint: Optional[str] = None
    examples: list[PatternRecord] = field(default_factory=list)

    @property
    def profile(self) -> Optional[BankProfile]:
        if not self.bank_hint:
            return None
        return BANK_PROFILES.get(canonicalize_bank_name(self.bank_hint))


def _bank_list() -> str:
    return "\n".join(
        f"- {profile.bank_name} ({profile.color_scheme}, {profile.account_number_format})"
        for profile in BANK_PROFILES.values()
    )


def _guidance(context: Optional[ExtractionContext]) -> str:
    if context is None:
        return ""

    lines: list[str] = []
    profile = context.profile
    if profile is not None:
        lines.extend(
            [
                f"BANK-SPECIFIC GUIDANCE for {profile.bank_name}:",
                f"- Look for {profile.color_scheme} color scheme",
                f"- Logo: {profile.logo_description}",
                f"- Account format: {profile.account_number_format}",
            ]
        )
    elif context.bank_hint:
        lines.append(f"The image is expected to come from {context.bank_hint}.")

    if context.examples:
        lines.append("SUCCESSFUL EXAMPLES:")
        for record in context.examples:
            holder = record.account_holder_name or "unknown holder"
            lines.append(f"- {record.bank_name}: account {mask_account(record.account_number)}, {holder}")

    return "\n".join(lines)


def json_instruction(context: Optional[ExtractionContext] = None) -> str:
    guidance = _guidance(context)
    return f"""You are an expert at extracting Nigerian bank account information. Analyze this image and extract:

1. Bank Name: match exactly from this list of Nigerian banks when possible:
{_bank_list()}

2. Account Number: must be exactly 10 digits (Nigerian NUBAN standard)

3. Account Holder Name: full name as written

4. Amount: any monetary value if visible

{guidance}

Respond with ONLY this JSON object:
{{
  "bankName": "Exact bank name from list",
  "accountNumber": "1234567890",
  "accountHolderName": "FULL NAME",
  "amount": "1000.00",
  "confidence": 95
}}

Use empty strings for fields you cannot see. Use context clues like logos, colors and formatting patterns."""


def labeled_instruction(context: Optional[ExtractionContext] = None) -> str:
    guidance = _guidance(context)
    return f"""Extract Nigerian bank details from this image. Focus on:

1. BANK NAME: look for bank logos, names, or distinctive colors (GTBank=orange, UBA=red, Zenith=blue, Access=orange, etc.)
2. ACCOUNT NUMBER: find the 10-digit account number
3. ACCOUNT HOLDER: person/company name if visible
4. AMOUNT: any monetary values if present

{guidance}

Output EXACTLY in this format:
BANK NAME: [name] (Confidence: High/Medium/Low)
ACCOUNT NUMBER: [10 digits]
ACCOUNT HOLDER: [name]
AMOUNT: [amount]

Be concise. If not found, write "Not found"."""
