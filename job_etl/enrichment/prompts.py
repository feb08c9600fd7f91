"""
Prompt text for listing analysis.
"""

from typing import Iterable, List

from job_etl.models import ReferenceCapability, SimilarRole, TaxonomyGroup

ANALYSIS_ACTION = "capability_analysis"

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert in analysing job descriptions and mapping them onto a "
    "capability framework and a role taxonomy. Respond with valid JSON only."
)

ANALYSIS_SCHEMA = """{
  "capabilities": [
    {
      "name": "Capability name exactly as listed above",
      "level": "One of: foundational, intermediate, adept, advanced, highly advanced",
      "description": "How this capability applies to the role",
      "relevance": 0.0
    }
  ],
  "taxonomies": ["Taxonomy group names exactly as listed above"],
  "skills": [
    {
      "name": "Specific skill name",
      "description": "How this skill is used in the role",
      "category": "One of: Technical, Domain Knowledge, Soft Skills"
    }
  ],
  "general_role": {
    "id": "Id of a matching existing role, or empty string",
    "title": "General role title",
    "description": "One sentence describing the general role"
  },
  "summary": "1-2 sentence summary of the role's key requirements"
}"""


def _capability_lines(capabilities: Iterable[ReferenceCapability]) -> List[str]:
    lines = []
    for cap in capabilities:
        group = f" [{cap.group_name}]" if cap.group_name else ""
        desc = f": {cap.description}" if cap.description else ""
        lines.append(f"- {cap.name}{group}{desc}")
    return lines


def _taxonomy_lines(taxonomies: Iterable[TaxonomyGroup]) -> List[str]:
    return [f"- {t.name}: {t.description}" if t.description else f"- {t.name}" for t in taxonomies]


def _similar_role_lines(roles: Iterable[SimilarRole]) -> List[str]:
    return [
        f"- id={role.id} | {role.name} (similarity {role.similarity:.2f})"
        + (f": {role.description}" if role.description else "")
        for role in roles
    ]


def build_analysis_instructions(
    capabilities: List[ReferenceCapability],
    taxonomies: List[TaxonomyGroup],
    similar_roles: List[SimilarRole],
) -> str:
    """Instructions for capability, taxonomy and general-role analysis."""
    sections = [
        "Analyse the job listing below and identify the capabilities it requires "
        "from this capability framework:",
        "\n".join(_capability_lines(capabilities)),
        "Classify the role into one or more of these taxonomy groups:",
        "\n".join(_taxonomy_lines(taxonomies)),
    ]

    if similar_roles:
        sections.extend(
            [
                "These existing general roles are similar to this listing. If one of them "
                "fits, return its id in general_role.id; otherwise leave the id empty and "
                "propose a new general role title:",
                "\n".join(_similar_role_lines(similar_roles)),
            ]
        )
    else:
        sections.append(
            "Propose a general role title that groups this listing with similar roles "
            "across organisations; leave general_role.id empty."
        )

    sections.extend(
        [
            "Use only capability and taxonomy names from the lists above.",
            "Respond with a JSON object with this structure:",
            ANALYSIS_SCHEMA,
        ]
    )
    return "\n\n".join(sections)
