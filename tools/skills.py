"""User-defined skills and the store interface they are read from."""

from typing import Iterable, Protocol

from gateway.schema import Skill, ToolSchema


class SkillStore(Protocol):
    def list_enabled_skills(self) -> list[Skill]:
        ...

    def get_skill(self, name: str) -> Skill | None:
        ...


class StaticSkillStore:
    """In-memory skill store."""

    def __init__(self, skills: Iterable[Skill] = ()):
        self._skills: dict[str, Skill] = {}
        for skill in skills:
            self.put(skill)

    def put(self, skill: Skill) -> None:
        self._skills[skill.name] = skill

    def remove(self, name: str) -> None:
        self._skills.pop(name, None)

    def list_enabled_skills(self) -> list[Skill]:
        return [skill for skill in self._skills.values() if skill.enabled]

    def get_skill(self, name: str) -> Skill | None:
        return self._skills.get(name)


def skill_schema(skill: Skill) -> ToolSchema:
    return ToolSchema(name=skill.name, description=skill.description, parameters=skill.parameters())


def run_skill(skill: Skill, arguments: str) -> str:
    """Render the textual contract of a user skill invocation."""
    return (
        f'<skill-loaded name="{skill.name}">\n'
        f"# Skill: {skill.name}\n\n"
        f"{skill.description}\n"
        "</skill-loaded>\n\n"
        f"Skill {skill.name} invoked with arguments: {arguments}"
    )
