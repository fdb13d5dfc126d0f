"""yarn — yarn requirement, project cost, time estimate and yarn substitution."""

from crochetkit.yarn.calculator import (
    ProjectCost,
    Substitution,
    TimeEstimate,
    YarnComparison,
    YarnOption,
    YarnRequirement,
    calculate_project_cost,
    calculate_yarn_requirement,
    compare_yarn_options,
    estimate_project_time,
    generate_shopping_list,
    substitute_yarn,
)

__all__ = [
    "ProjectCost",
    "Substitution",
    "TimeEstimate",
    "YarnComparison",
    "YarnOption",
    "YarnRequirement",
    "calculate_project_cost",
    "calculate_yarn_requirement",
    "compare_yarn_options",
    "estimate_project_time",
    "generate_shopping_list",
    "substitute_yarn",
]
