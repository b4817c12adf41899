"""Detect which lead field each spreadsheet column feeds.

Headers are matched against a static alias dictionary (French and English
spellings). The detection is a pure function of the header row: the same
headers always produce the same mapping.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Sequence

from lead_importer.services.import_types import ColumnMapping, ColumnMappingConfig
from lead_importer.utils.lead_validator import CONTACT_FIELDS

AUTO_MAP_CONFIDENCE_THRESHOLD = 0.7
MAX_ALTERNATIVES = 3

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "external_id": (
        "id", "external_id", "id_externe", "identifiant", "reference", "ref",
        "numero", "no", "code", "code_client", "lead_id", "customer_id", "client_id",
    ),
    "first_name": (
        "prenom", "prénom", "firstname", "first_name", "first name", "given_name",
        "given name", "nom_prenom",
    ),
    "last_name": (
        "nom", "nom_de_famille", "nom de famille", "lastname", "last_name",
        "last name", "family_name", "family name", "surname", "full_name",
        "fullname", "name",
    ),
    "email": (
        "email", "e-mail", "mail", "courriel", "adresse_email", "adresse_mail",
        "adresse email", "adresse mail", "email_address", "email address",
        "e_mail_principale", "email_principale", "email principale", "main_email",
    ),
    "phone": (
        "telephone", "téléphone", "tel", "phone", "mobile", "portable", "gsm",
        "numero_telephone", "numero_tel", "phone_number", "phone number",
        "tel_mobile", "tel_fixe", "telephone_principal", "téléphone_principal",
        "telephone principal", "main_phone", "cell", "cellphone",
    ),
    "company": (
        "entreprise", "societe", "société", "company", "raison_sociale",
        "raison sociale", "nom_entreprise", "nom entreprise", "organization",
        "organisation", "business", "firm",
    ),
    "job_title": (
        "fonction", "poste", "titre", "job_title", "job title", "job", "role",
        "position", "intitule_poste", "intitulé poste", "profession", "occupation",
    ),
    "address": (
        "adresse", "address", "rue", "street", "voie", "adresse_postale",
        "adresse postale", "numero_rue", "street_address", "full_address", "location",
    ),
    "city": ("ville", "city", "commune", "localite", "localité", "town", "municipality"),
    "postal_code": (
        "code_postal", "code postal", "cp", "postal_code", "postalcode", "zip",
        "zipcode", "zip_code", "postcode",
    ),
    "country": ("pays", "country", "nation", "region"),
    "status": (
        "statut", "status", "etat", "état", "state", "lead_status", "lead status",
        "contact_status", "customer_status",
    ),
    "source": (
        "source", "origine", "provenance", "canal", "channel", "campaign",
        "campagne", "utm_source", "campaign_name", "form_name", "platform",
        "ad_name", "adset_name",
    ),
    "notes": (
        "notes", "note", "commentaire", "commentaires", "comment", "comments",
        "remarque", "remarques", "description", "observations", "info",
        "information", "details",
    ),
    "assigned_to": (
        "commercial", "vendeur", "assigné", "assigne", "assigned_to", "assigned",
        "owner", "responsable", "sales_rep", "sales rep", "agent", "assigné_à",
        "assigne_a", "assigned to", "rep", "conseiller", "account_owner",
    ),
}

LEAD_FIELDS = tuple(COLUMN_ALIASES)


def normalize_header(header: str) -> str:
    """Lower-case, strip accents, spaces to underscores, drop other punctuation."""
    decomposed = unicodedata.normalize("NFD", header.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = re.sub(r"\s+", "_", stripped.strip())
    return re.sub(r"[^a-z0-9_]", "", stripped)


def _levenshtein(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def calculate_similarity(first: str, second: str) -> float:
    """Score two headers from 0 to 1 (1 means identical after normalization)."""
    s1 = normalize_header(first)
    s2 = normalize_header(second)
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 in s2 or s2 in s1:
        return 0.9
    return 1 - _levenshtein(s1, s2) / max(len(s1), len(s2))


def find_best_match(header: str) -> tuple[str | None, float]:
    normalized = normalize_header(header)
    best_field: str | None = None
    best_score = 0.0
    for field, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            alias_key = normalize_header(alias)
            if normalized == alias_key:
                return field, 1.0
            score = calculate_similarity(normalized, alias_key)
            if score > best_score:
                best_score = score
                best_field = field
    return best_field, best_score


def _alternatives(header: str, primary: str | None) -> list[tuple[str, float]]:
    normalized = normalize_header(header)
    if not normalized:
        return []
    found: dict[str, float] = {}
    for field, aliases in COLUMN_ALIASES.items():
        if field == primary:
            continue
        for alias in aliases:
            alias_key = normalize_header(alias)
            if normalized in alias_key or alias_key in normalized:
                confidence = min(
                    len(alias_key) / len(normalized), len(normalized) / len(alias_key)
                ) * 0.8
                if confidence > 0.5 and confidence > found.get(field, 0.0):
                    found[field] = confidence
    ranked = sorted(found.items(), key=lambda item: item[1], reverse=True)
    return ranked[:MAX_ALTERNATIVES]


def auto_map_column(header: str) -> tuple[str | None, float, list[tuple[str, float]]]:
    """Return (field above threshold or None, raw confidence, alternatives)."""
    field, confidence = find_best_match(header)
    alternatives = _alternatives(header, field) if confidence < 1 else []
    if confidence < AUTO_MAP_CONFIDENCE_THRESHOLD:
        field = None
    return field, confidence, alternatives


def auto_map_columns(headers: Sequence[str]) -> list[ColumnMapping]:
    """Map every header, assigning each lead field to at most one column.

    Columns are served in descending confidence (ties keep file order) and
    the result is returned in file order.
    """
    preliminary = [
        (index, header, auto_map_column(header)) for index, header in enumerate(headers)
    ]
    preliminary.sort(key=lambda item: item[2][1], reverse=True)

    used: set[str] = set()
    mappings: list[ColumnMapping] = []
    for index, header, (field, confidence, alternatives) in preliminary:
        assigned: str | None = None
        assigned_confidence = 0.0
        if field and field not in used:
            assigned, assigned_confidence = field, confidence
        elif field:
            for alt_field, alt_confidence in alternatives:
                if alt_field not in used:
                    assigned, assigned_confidence = alt_field, alt_confidence
                    break
        if assigned:
            used.add(assigned)
        mappings.append(
            ColumnMapping(
                source_column=header,
                source_index=index,
                target_field=assigned,
                confidence=round(assigned_confidence, 4) if assigned else 0.0,
            )
        )

    mappings.sort(key=lambda mapping: mapping.source_index)
    return mappings


def build_mapping_config(headers: Sequence[str], **options: Any) -> ColumnMappingConfig:
    return ColumnMappingConfig(mappings=tuple(auto_map_columns(headers)), **options)


def check_required_mappings(mappings: Sequence[ColumnMapping]) -> dict[str, Any]:
    """Report whether a contact field is mapped, plus recommended gaps."""
    mapped = {mapping.target_field for mapping in mappings if mapping.target_field}
    has_contact_field = any(field in mapped for field in CONTACT_FIELDS)
    missing = [field for field in ("first_name", "last_name") if field not in mapped]
    return {
        "is_complete": has_contact_field,
        "has_contact_field": has_contact_field,
        "missing_fields": missing,
    }


def mapping_summary(mappings: Sequence[ColumnMapping]) -> dict[str, int]:
    mapped = [mapping for mapping in mappings if mapping.target_field]
    return {
        "total_columns": len(mappings),
        "mapped_columns": len(mapped),
        "unmapped_columns": len(mappings) - len(mapped),
        "high_confidence_count": sum(
            1 for m in mapped if m.confidence >= AUTO_MAP_CONFIDENCE_THRESHOLD
        ),
        "low_confidence_count": sum(
            1
            for m in mapped
            if m.confidence < AUTO_MAP_CONFIDENCE_THRESHOLD and not m.is_manual
        ),
        "manual_count": sum(1 for m in mapped if m.is_manual),
    }
