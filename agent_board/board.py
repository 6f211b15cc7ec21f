"""GitHub Projects (v2) board access via ``gh api graphql``."""

from __future__ import annotations

import logging

from agent_board.github import GhRunner, GitHubError
from agent_board.models import BoardSnapshot, Stage, WorkItem

logger = logging.getLogger(__name__)

STATUS_FIELD = "Status"
PAGE_SIZE = 100

_PROJECT_QUERY = """
query($owner: String!, $number: Int!) {
  repositoryOwner(login: $owner) {
    ... on ProjectV2Owner {
      projectV2(number: $number) {
        id
        field(name: "Status") {
          ... on ProjectV2SingleSelectField { id options { id name } }
        }
      }
    }
  }
}
"""

_ITEMS_QUERY = """
query($project: ID!, $first: Int!, $cursor: String) {
  node(id: $project) {
    ... on ProjectV2 {
      items(first: $first, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          fieldValueByName(name: "Status") {
            ... on ProjectV2ItemFieldSingleSelectValue { name }
          }
          content {
            ... on Issue { number id title state }
          }
        }
      }
    }
  }
}
"""

_MOVE_MUTATION = """
mutation($project: ID!, $item: ID!, $field: ID!, $option: String!) {
  updateProjectV2ItemFieldValue(input: {
    projectId: $project, itemId: $item, fieldId: $field,
    value: {singleSelectOptionId: $option}
  }) { projectV2Item { id } }
}
"""

_ADD_MUTATION = """
mutation($project: ID!, $content: ID!) {
  addProjectV2ItemById(input: {projectId: $project, contentId: $content}) {
    item { id }
  }
}
"""


class BoardClient:
    """Reads and writes the board's single-select status column."""

    def __init__(self, gh: GhRunner, owner: str, project_number: int) -> None:
        self.gh = gh
        self.owner = owner
        self.project_number = project_number

    def fetch_project(self) -> tuple[str, str, dict[str, str]]:
        """Return ``(project_id, status_field_id, {option name: option id})``."""
        data = self.gh.graphql(
            _PROJECT_QUERY, {"owner": self.owner, "number": self.project_number}
        )
        project = ((data.get("repositoryOwner") or {}).get("projectV2")) or None
        if project is None:
            raise GitHubError(f"Project {self.owner}#{self.project_number} not found")
        field = project.get("field") or {}
        if not field.get("id"):
            raise GitHubError(f"Project {self.owner}#{self.project_number} has no {STATUS_FIELD} field")
        options = {opt["name"]: opt["id"] for opt in field.get("options") or []}
        return project["id"], field["id"], options

    def fetch_snapshot(self) -> BoardSnapshot:
        project_id, field_id, options = self.fetch_project()
        snapshot = BoardSnapshot(
            project_id=project_id, status_field_id=field_id, status_options=options
        )
        for stage in Stage:
            if snapshot.option_id(stage) is None:
                logger.warning("Board has no %r column; items cannot move there", stage.value)

        cursor = None
        while True:
            data = self.gh.graphql(_ITEMS_QUERY, {"project": project_id, "first": PAGE_SIZE, "cursor": cursor})
            items = ((data.get("node") or {}).get("items")) or {}
            for node in items.get("nodes") or []:
                item = self._to_work_item(node)
                if item is not None:
                    snapshot.items[item.stage].append(item)
            page = items.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            cursor = page.get("endCursor")

        logger.debug(
            "Board snapshot: %s",
            ", ".join(f"{s.value}={snapshot.count(s)}" for s in Stage),
        )
        return snapshot

    def move_item(self, snapshot: BoardSnapshot, item: WorkItem, stage: Stage) -> None:
        option_id = snapshot.option_id(stage)
        if option_id is None:
            raise GitHubError(f"No {stage.value!r} status option on the board")
        self.gh.graphql(
            _MOVE_MUTATION,
            {
                "project": snapshot.project_id,
                "item": item.item_id,
                "field": snapshot.status_field_id,
                "option": option_id,
            },
            mutation=True,
        )
        logger.info("#%d: %s -> %s", item.number, item.stage.value, stage.value)
        item.stage = stage

    def add_item(self, snapshot: BoardSnapshot, content_id: str) -> str:
        """Add an issue to the board and return the new board item id."""
        data = self.gh.graphql(
            _ADD_MUTATION,
            {"project": snapshot.project_id, "content": content_id},
            mutation=True,
        )
        return data["addProjectV2ItemById"]["item"]["id"]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_work_item(node: dict) -> WorkItem | None:
        content = node.get("content") or {}
        if "number" not in content:
            return None  # draft item or pull request
        status = (node.get("fieldValueByName") or {}).get("name")
        stage = Stage.from_name(status) if status else Stage.BACKLOG
        if stage is None:
            logger.debug("Skipping #%s in unknown column %r", content["number"], status)
            return None
        return WorkItem(
            number=int(content["number"]),
            node_id=content.get("id", ""),
            item_id=node["id"],
            title=content.get("title", ""),
            stage=stage,
        )
