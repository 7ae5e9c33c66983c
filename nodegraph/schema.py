"""
nodegraph System Schema

Well-known system ids for built-in supertags and fields, and the
idempotent bootstrap that creates them. System nodes are looked up by
their stable `system_id`, never by generated id.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

import structlog

from nodegraph.types import FieldType

if TYPE_CHECKING:
    from nodegraph.store.base import NodeBackend

logger = structlog.get_logger(__name__)


class SYSTEM_SUPERTAGS:
    SUPERTAG = "supertag:supertag"
    FIELD = "supertag:field"
    SYSTEM = "supertag:system"
    ITEM = "supertag:item"
    TOOL = "supertag:tool"
    REPO = "supertag:repo"
    TAG = "supertag:tag"
    COMMAND = "supertag:command"
    WORKSPACE = "supertag:workspace"
    INBOX = "supertag:inbox"
    CONCEPT = "supertag:concept"
    QUERY = "supertag:query"
    AUTOMATION = "supertag:automation"
    COMPUTED_FIELD = "supertag:computed_field"
    TASK = "supertag:task"
    EVENT = "supertag:event"


class SYSTEM_FIELDS:
    # Core
    SUPERTAG = "field:supertag"
    EXTENDS = "field:extends"
    FIELD_TYPE = "field:field_type"

    # Common
    TYPE = "field:type"
    PATH = "field:path"
    HOMEPAGE = "field:homepage"
    DESCRIPTION = "field:description"
    COLOR = "field:color"
    ICON = "field:icon"
    LEGACY_ID = "field:legacy_id"
    CATEGORY = "field:category"
    PLATFORM = "field:platform"
    DOCS = "field:docs"
    DEPENDENCIES = "field:dependencies"
    TAGS = "field:tags"
    COMMANDS = "field:commands"
    PARENT = "field:parent"
    ORDER = "field:order"
    CHECK_COMMAND = "field:check_command"
    INSTALL_INSTRUCTIONS = "field:install_instructions"

    # Inbox
    STATUS = "field:status"
    NOTES = "field:notes"
    TITLE = "field:title"

    # Saved queries
    QUERY_DEFINITION = "field:query_definition"
    QUERY_SORT = "field:query_sort"
    QUERY_LIMIT = "field:query_limit"
    QUERY_RESULT_CACHE = "field:query_result_cache"
    QUERY_EVALUATED_AT = "field:query_evaluated_at"

    # Computed fields
    COMPUTED_FIELD_DEFINITION = "field:computed_field_definition"
    COMPUTED_FIELD_VALUE = "field:computed_field_value"
    COMPUTED_FIELD_UPDATED_AT = "field:computed_field_updated_at"

    # Calendar
    START_DATE = "field:start_date"
    END_DATE = "field:end_date"


SYSTEM_ID_PREFIXES = ("field:", "supertag:", "item:")


def is_system_id(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(SYSTEM_ID_PREFIXES)


def is_schema_system_id(value: Optional[str]) -> bool:
    """True for field and supertag system ids (nodes that shape queries)."""
    return bool(value) and value.startswith(("field:", "supertag:"))


# (system_id, display name, extends)
ENTITY_SUPERTAGS: List[Tuple[str, str, Optional[str]]] = [
    (SYSTEM_SUPERTAGS.ITEM, "#Item", None),
    (SYSTEM_SUPERTAGS.TOOL, "#Tool", SYSTEM_SUPERTAGS.ITEM),
    (SYSTEM_SUPERTAGS.REPO, "#Repo", SYSTEM_SUPERTAGS.ITEM),
    (SYSTEM_SUPERTAGS.CONCEPT, "#Concept", SYSTEM_SUPERTAGS.ITEM),
    (SYSTEM_SUPERTAGS.TAG, "#Tag", None),
    (SYSTEM_SUPERTAGS.COMMAND, "#Command", None),
    (SYSTEM_SUPERTAGS.WORKSPACE, "#Workspace", None),
    (SYSTEM_SUPERTAGS.INBOX, "#Inbox", None),
    (SYSTEM_SUPERTAGS.QUERY, "#Query", None),
    (SYSTEM_SUPERTAGS.AUTOMATION, "#Automation", None),
    (SYSTEM_SUPERTAGS.COMPUTED_FIELD, "#ComputedField", None),
    (SYSTEM_SUPERTAGS.TASK, "#Task", None),
    (SYSTEM_SUPERTAGS.EVENT, "#Event", None),
]

# (system_id, display name, value type)
COMMON_FIELDS: List[Tuple[str, str, FieldType]] = [
    (SYSTEM_FIELDS.TYPE, "type", FieldType.SELECT),
    (SYSTEM_FIELDS.PATH, "path", FieldType.TEXT),
    (SYSTEM_FIELDS.HOMEPAGE, "homepage", FieldType.URL),
    (SYSTEM_FIELDS.DESCRIPTION, "description", FieldType.TEXT),
    (SYSTEM_FIELDS.COLOR, "color", FieldType.TEXT),
    (SYSTEM_FIELDS.ICON, "icon", FieldType.TEXT),
    (SYSTEM_FIELDS.LEGACY_ID, "legacyId", FieldType.TEXT),
    (SYSTEM_FIELDS.CATEGORY, "category", FieldType.TEXT),
    (SYSTEM_FIELDS.PLATFORM, "platform", FieldType.JSON),
    (SYSTEM_FIELDS.DOCS, "docs", FieldType.JSON),
    (SYSTEM_FIELDS.DEPENDENCIES, "dependencies", FieldType.NODES),
    (SYSTEM_FIELDS.TAGS, "tags", FieldType.NODES),
    (SYSTEM_FIELDS.COMMANDS, "commands", FieldType.NODES),
    (SYSTEM_FIELDS.PARENT, "parent", FieldType.NODE),
    (SYSTEM_FIELDS.ORDER, "order", FieldType.NUMBER),
    (SYSTEM_FIELDS.CHECK_COMMAND, "checkCommand", FieldType.TEXT),
    (SYSTEM_FIELDS.INSTALL_INSTRUCTIONS, "installInstructions", FieldType.TEXT),
    (SYSTEM_FIELDS.STATUS, "status", FieldType.SELECT),
    (SYSTEM_FIELDS.NOTES, "notes", FieldType.TEXT),
    (SYSTEM_FIELDS.TITLE, "title", FieldType.TEXT),
    (SYSTEM_FIELDS.QUERY_DEFINITION, "queryDefinition", FieldType.JSON),
    (SYSTEM_FIELDS.QUERY_SORT, "querySort", FieldType.JSON),
    (SYSTEM_FIELDS.QUERY_LIMIT, "queryLimit", FieldType.NUMBER),
    (SYSTEM_FIELDS.QUERY_RESULT_CACHE, "queryResultCache", FieldType.JSON),
    (SYSTEM_FIELDS.QUERY_EVALUATED_AT, "queryEvaluatedAt", FieldType.TEXT),
    (SYSTEM_FIELDS.COMPUTED_FIELD_DEFINITION, "computedFieldDefinition", FieldType.JSON),
    (SYSTEM_FIELDS.COMPUTED_FIELD_VALUE, "computedFieldValue", FieldType.NUMBER),
    (SYSTEM_FIELDS.COMPUTED_FIELD_UPDATED_AT, "computedFieldUpdatedAt", FieldType.TEXT),
    (SYSTEM_FIELDS.START_DATE, "start_date", FieldType.TEXT),
    (SYSTEM_FIELDS.END_DATE, "end_date", FieldType.TEXT),
]


async def bootstrap(backend: "NodeBackend") -> Dict[str, str]:
    """
    Create system fields and supertags. Safe to run any number of times.

    Every node is upserted by system id, supertag edges are added only
    when missing and single-valued properties are replaced. No mutation
    events are emitted.

    Returns:
        Mapping of system id -> node id
    """
    ids: Dict[str, str] = {}

    async def upsert(system_id: str, content: str) -> str:
        ids[system_id] = await backend._upsert_system_node(system_id, content)
        return ids[system_id]

    # Step 1: core fields (everything else is described with them)
    await upsert(SYSTEM_FIELDS.SUPERTAG, "Supertag")
    await upsert(SYSTEM_FIELDS.EXTENDS, "Extends")
    await upsert(SYSTEM_FIELDS.FIELD_TYPE, "fieldType")

    # Step 2: meta supertags
    supertag_id = await upsert(SYSTEM_SUPERTAGS.SUPERTAG, "#Supertag")
    field_id = await upsert(SYSTEM_SUPERTAGS.FIELD, "#Field")
    system_id = await upsert(SYSTEM_SUPERTAGS.SYSTEM, "#System")

    for meta in (supertag_id, field_id, system_id):
        await backend._ensure_supertag_edge(meta, supertag_id)
        await backend._ensure_supertag_edge(meta, system_id)

    core_types = {
        SYSTEM_FIELDS.SUPERTAG: FieldType.NODES,
        SYSTEM_FIELDS.EXTENDS: FieldType.NODE,
        SYSTEM_FIELDS.FIELD_TYPE: FieldType.SELECT,
    }
    for field_system_id, field_type in core_types.items():
        await backend._ensure_supertag_edge(ids[field_system_id], field_id)
        await backend._ensure_supertag_edge(ids[field_system_id], system_id)
        await backend._replace_scalar(ids[field_system_id], ids[SYSTEM_FIELDS.FIELD_TYPE], field_type.value)

    # Step 3: entity supertags
    for st_system_id, content, extends in ENTITY_SUPERTAGS:
        st_id = await upsert(st_system_id, content)
        await backend._ensure_supertag_edge(st_id, supertag_id)
        await backend._ensure_supertag_edge(st_id, system_id)
        if extends:
            await backend._replace_reference(st_id, ids[SYSTEM_FIELDS.EXTENDS], ids[extends])

    # Step 4: common fields
    for f_system_id, content, field_type in COMMON_FIELDS:
        f_id = await upsert(f_system_id, content)
        await backend._ensure_supertag_edge(f_id, field_id)
        await backend._ensure_supertag_edge(f_id, system_id)
        await backend._replace_scalar(f_id, ids[SYSTEM_FIELDS.FIELD_TYPE], field_type.value)

    logger.info(f"Bootstrap complete: {len(ids)} system nodes")
    return ids
