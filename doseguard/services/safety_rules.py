from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any, Iterable, Sequence
from urllib.parse import quote

from ..config import get_settings
from ..rules.rule_loader import load_ruleset


class Severity(str, enum.Enum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.MAJOR: 1,
    Severity.MODERATE: 2,
    Severity.MINOR: 3,
}

ALLERGY_SEVERITY = {
    "anaphylaxis": Severity.CRITICAL,
    "severe": Severity.MAJOR,
}

INTERACTION_URL = "https://www.drugs.com/drug_interactions.php?drug_list={}"


@dataclass(frozen=True)
class InteractionRule:
    drug_a: str
    drug_b: str
    severity: Severity
    description: str
    management: str | None = None


@dataclass(frozen=True)
class TimingRule:
    drug_a: str
    drug_b: str
    minimum_hours: int
    reason: str


@dataclass(frozen=True)
class SafetyRuleConfig:
    """Immutable rule tables; build one per process and share it."""

    interactions: tuple[InteractionRule, ...] = ()
    therapeutic_classes: tuple[tuple[str, tuple[str, ...]], ...] = ()
    timing_separations: tuple[TimingRule, ...] = ()
    version: str = "v1"

    @classmethod
    def load(cls, path: str | None = None) -> "SafetyRuleConfig":
        raw = load_ruleset(path)
        return cls(
            interactions=tuple(
                InteractionRule(
                    drug_a=row["drug_a"],
                    drug_b=row["drug_b"],
                    severity=Severity(row["severity"]),
                    description=row["description"],
                    management=row.get("management"),
                )
                for row in raw["interactions"]
            ),
            therapeutic_classes=tuple(
                (name, tuple(keywords)) for name, keywords in raw["therapeutic_classes"].items()
            ),
            timing_separations=tuple(
                TimingRule(
                    drug_a=row["drug_a"],
                    drug_b=row["drug_b"],
                    minimum_hours=int(row["minimum_hours"]),
                    reason=row["reason"],
                )
                for row in raw["timing_separations"]
            ),
            version=raw.get("version", "v1"),
        )


@lru_cache
def get_rule_config() -> SafetyRuleConfig:
    return SafetyRuleConfig.load(get_settings().SAFETY_RULESET_PATH)


@dataclass(frozen=True)
class SafetyMedication:
    id: str
    name: str
    generic_name: str | None = None
    brand_name: str | None = None

    @classmethod
    def from_model(cls, medication) -> "SafetyMedication":
        return cls(
            id=str(medication.id),
            name=medication.name,
            generic_name=medication.generic_name,
            brand_name=medication.brand_name,
        )


@dataclass(frozen=True)
class SafetyProfile:
    allergies: tuple[dict, ...] = ()
    contraindications: tuple[dict, ...] = ()

    @classmethod
    def from_model(cls, profile) -> "SafetyProfile":
        return cls(
            allergies=tuple(profile.allergies or ()),
            contraindications=tuple(profile.contraindications or ()),
        )


@dataclass
class SafetyAlert:
    id: str
    type: str
    severity: Severity
    title: str
    description: str
    medications: list[str]
    recommendations: list[str] = field(default_factory=list)
    source: str = ""
    learn_more_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        return payload


def _pair_matches(first: str, second: str, drug_a: str, drug_b: str) -> bool:
    first, second = first.lower(), second.lower()
    drug_a, drug_b = drug_a.lower(), drug_b.lower()
    return (drug_a in first and drug_b in second) or (drug_b in first and drug_a in second)


def _pairs(medications: Sequence[SafetyMedication]) -> Iterable[tuple[SafetyMedication, SafetyMedication]]:
    for i in range(len(medications)):
        for j in range(i + 1, len(medications)):
            yield medications[i], medications[j]


class SafetyRuleEngine:
    """Evaluates an active medication set against the configured rule tables.

    Stateless apart from the rule tables, so one engine can serve any number
    of patients concurrently.
    """

    def __init__(self, config: SafetyRuleConfig | None = None):
        self.config = config or get_rule_config()

    def evaluate(
        self,
        medications: Sequence,
        profile: SafetyProfile | None = None,
    ) -> list[SafetyAlert]:
        meds = [m if isinstance(m, SafetyMedication) else SafetyMedication.from_model(m) for m in medications]
        if not meds:
            return []

        alerts: list[SafetyAlert] = []
        alerts.extend(self.check_interactions(meds))
        alerts.extend(self.check_duplicates(meds))
        alerts.extend(self.check_timing(meds))
        if profile is not None:
            alerts.extend(self.check_allergies(meds, profile))
            alerts.extend(self.check_contraindications(meds, profile))

        # sorted() is stable: ties keep detection order
        return sorted(alerts, key=lambda alert: SEVERITY_RANK[alert.severity])

    def check_interactions(self, meds: Sequence[SafetyMedication]) -> list[SafetyAlert]:
        alerts = []
        for first, second in _pairs(meds):
            rule = next(
                (r for r in self.config.interactions if _pair_matches(first.name, second.name, r.drug_a, r.drug_b)),
                None,
            )
            if rule is None:
                continue
            alerts.append(
                SafetyAlert(
                    id=f"interaction-{first.id}-{second.id}",
                    type="interaction",
                    severity=rule.severity,
                    title=f"{first.name} + {second.name}",
                    description=rule.description,
                    medications=[first.name, second.name],
                    recommendations=[
                        rule.management or "Consult with healthcare provider",
                        "Monitor for increased side effects",
                        "Consider timing separation if possible",
                    ],
                    source="Drug Interaction Database",
                    learn_more_url=INTERACTION_URL.format(
                        ",".join(quote(name, safe="") for name in (first.name, second.name))
                    ),
                )
            )
        return alerts

    def classify(self, name: str) -> str | None:
        lowered = name.lower()
        for class_name, keywords in self.config.therapeutic_classes:
            if any(keyword.lower() in lowered for keyword in keywords):
                return class_name
        return None

    def check_duplicates(self, meds: Sequence[SafetyMedication]) -> list[SafetyAlert]:
        groups: dict[str, list[SafetyMedication]] = {}
        for med in meds:
            class_name = self.classify(med.name)
            if class_name is not None:
                groups.setdefault(class_name, []).append(med)

        alerts = []
        for class_name, members in groups.items():
            if len(members) < 2:
                continue
            alerts.append(
                SafetyAlert(
                    id=f"duplicate-{class_name}",
                    type="duplicate",
                    severity=Severity.MODERATE,
                    title=f"Multiple {class_name} medications",
                    description=(
                        f"You are taking multiple medications in the same therapeutic class ({class_name}). "
                        "This may increase the risk of side effects."
                    ),
                    medications=[m.name for m in members],
                    recommendations=[
                        "Verify with healthcare provider that multiple medications are necessary",
                        "Monitor for increased side effects",
                        "Ensure proper dosing adjustments if needed",
                    ],
                    source="Therapeutic Class Analysis",
                )
            )
        return alerts

    def check_timing(self, meds: Sequence[SafetyMedication]) -> list[SafetyAlert]:
        # co-presence only; actual dose times are not consulted
        alerts = []
        for first, second in _pairs(meds):
            rule = next(
                (r for r in self.config.timing_separations if _pair_matches(first.name, second.name, r.drug_a, r.drug_b)),
                None,
            )
            if rule is None:
                continue
            alerts.append(
                SafetyAlert(
                    id=f"timing-{first.id}-{second.id}",
                    type="timing",
                    severity=Severity.MODERATE,
                    title=f"Timing separation needed: {first.name} and {second.name}",
                    description=(
                        f"These medications should be separated by at least {rule.minimum_hours} hours. "
                        f"{rule.reason}"
                    ),
                    medications=[first.name, second.name],
                    recommendations=[
                        f"Take {first.name} and {second.name} at least {rule.minimum_hours} hours apart",
                        "Consider adjusting medication schedule",
                        "Set reminders to maintain proper spacing",
                    ],
                    source="Medication Timing Guidelines",
                )
            )
        return alerts

    def check_allergies(self, meds: Sequence[SafetyMedication], profile: SafetyProfile) -> list[SafetyAlert]:
        alerts = []
        for med in meds:
            for allergy in profile.allergies:
                allergen = (allergy.get("allergen") or "").strip()
                if not allergen or not self._allergy_matches(med, allergen.lower()):
                    continue
                severity_label = (allergy.get("severity") or "moderate").lower()
                alerts.append(
                    SafetyAlert(
                        id=f"allergy-{med.id}-{allergy.get('id', allergen)}",
                        type="allergy",
                        severity=ALLERGY_SEVERITY.get(severity_label, Severity.MODERATE),
                        title=f"Allergy Alert: {med.name}",
                        description=(
                            f"You have a known {severity_label} allergy to {allergen}. "
                            "This medication may contain or be related to this allergen."
                        ),
                        medications=[med.name],
                        recommendations=[
                            "DO NOT TAKE this medication",
                            "Contact healthcare provider immediately",
                            "Consider alternative medications",
                            "Update emergency contacts about this allergy",
                        ],
                        source="Patient Allergy Profile",
                    )
                )
        return alerts

    @staticmethod
    def _allergy_matches(med: SafetyMedication, allergen: str) -> bool:
        name = med.name.lower()
        if allergen in name or name in allergen:
            return True
        if med.generic_name and allergen in med.generic_name.lower():
            return True
        if med.brand_name and allergen in med.brand_name.lower():
            return True
        return False

    def check_contraindications(self, meds: Sequence[SafetyMedication], profile: SafetyProfile) -> list[SafetyAlert]:
        alerts = []
        for med in meds:
            name = med.name.lower()
            for entry in profile.contraindications:
                target = (entry.get("medication") or "").strip().lower()
                if not target or not (target in name or name in target):
                    continue
                alerts.append(
                    SafetyAlert(
                        id=f"contraindication-{med.id}-{entry.get('id', target)}",
                        type="contraindication",
                        severity=Severity.MAJOR,
                        title=f"Contraindication: {med.name}",
                        description=f"This medication is contraindicated. Reason: {entry.get('reason', '')}",
                        medications=[med.name],
                        recommendations=[
                            "Consult healthcare provider before taking",
                            "Discuss alternative medications",
                            "Review medical history and current conditions",
                        ],
                        source=entry.get("source") or "Patient Medical Record",
                    )
                )
        return alerts


def evaluate(medications: Sequence, profile: SafetyProfile | None = None) -> list[SafetyAlert]:
    return SafetyRuleEngine().evaluate(medications, profile)
