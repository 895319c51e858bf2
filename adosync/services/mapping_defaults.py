"""Default field mappings and work item types per entity type"""

from typing import Dict, List, NamedTuple, Optional, Tuple

from adosync.models import EntityType, MappingDirection, MappingType
from adosync.services.transforms import Transform


class DefaultMapping(NamedTuple):
    entity_type: EntityType
    external_field_name: str
    internal_field_name: str
    transform: Optional[Transform] = None
    direction: MappingDirection = MappingDirection.BIDIRECTIONAL

    @property
    def mapping_type(self) -> MappingType:
        return MappingType.TRANSFORM if self.transform else MappingType.DIRECT

    @property
    def transform_spec(self) -> Optional[str]:
        return self.transform.to_spec() if self.transform else None


_FWD = MappingDirection.FORWARD_ONLY

DEFAULT_FIELD_MAPPINGS: List[DefaultMapping] = [
    # Workstreams <-> Epics/Features
    DefaultMapping(EntityType.WORKSTREAM, "System.Title", "name"),
    DefaultMapping(EntityType.WORKSTREAM, "System.State", "status", Transform.STATE_TO_STATUS),
    DefaultMapping(EntityType.WORKSTREAM, "System.AssignedTo", "lead", Transform.EXTRACT_DISPLAY_NAME, _FWD),
    DefaultMapping(EntityType.WORKSTREAM, "Microsoft.VSTS.Scheduling.PercentComplete", "percent_complete"),
    DefaultMapping(EntityType.WORKSTREAM, "System.Description", "summary"),
    # Risks <-> Risks/Bugs
    DefaultMapping(EntityType.RISK, "System.Title", "title"),
    DefaultMapping(EntityType.RISK, "Microsoft.VSTS.Common.Severity", "severity", Transform.SEVERITY_MAPPING),
    DefaultMapping(EntityType.RISK, "System.State", "status", Transform.STATE_TO_RISK_STATUS),
    DefaultMapping(EntityType.RISK, "System.AssignedTo", "owner", Transform.EXTRACT_DISPLAY_NAME, _FWD),
    # Actions <-> Tasks
    DefaultMapping(EntityType.ACTION, "System.Title", "title"),
    DefaultMapping(EntityType.ACTION, "System.State", "status", Transform.STATE_TO_ACTION_STATUS),
    DefaultMapping(EntityType.ACTION, "System.AssignedTo", "owner", Transform.EXTRACT_DISPLAY_NAME, _FWD),
    DefaultMapping(EntityType.ACTION, "Microsoft.VSTS.Scheduling.DueDate", "due_date"),
]

# Work item types pulled for each entity type.
QUERY_ITEM_TYPES: Dict[EntityType, Tuple[str, ...]] = {
    EntityType.WORKSTREAM: ("Epic", "Feature"),
    EntityType.RISK: ("Risk", "Bug"),
    EntityType.ACTION: ("Task",),
}

# Work item type created when an unmapped entity is pushed.
CREATE_ITEM_TYPES: Dict[EntityType, str] = {
    EntityType.WORKSTREAM: "Epic",
    EntityType.RISK: "Risk",
    EntityType.ACTION: "Task",
}

# Internal attribute that becomes System.Title on a new work item.
TITLE_FIELDS: Dict[EntityType, str] = {
    EntityType.WORKSTREAM: "name",
    EntityType.RISK: "title",
    EntityType.ACTION: "title",
}


def build_wiql(entity_type: EntityType, project_name: str, changed_since: Optional[str] = None) -> str:
    """WIQL selecting the open work items backing `entity_type`."""
    types = ", ".join(f"'{t}'" for t in QUERY_ITEM_TYPES[entity_type])
    project = project_name.replace("'", "''")
    query = (
        "SELECT [System.Id] FROM WorkItems "
        f"WHERE [System.TeamProject] = '{project}' "
        f"AND [System.WorkItemType] IN ({types}) "
        "AND [System.State] <> 'Closed'"
    )
    if changed_since:
        query += f" AND [System.ChangedDate] >= '{changed_since}'"
    return query + " ORDER BY [System.Id]"
