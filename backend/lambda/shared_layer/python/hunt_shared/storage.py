"""hunt_shared.storage — Object storage and table adapters used by the hunt functions.

The orchestrator and handlers depend on the ``Protocol`` types below; the
boto3 classes are the production implementations. Adapters translate botocore
failures with ``retry.classify_aws_error`` so transient problems arrive at
the retry loop as ``TransientDependencyError``/``DependencyTimeoutError``.

Tables:

    team-codes     PK code                         -> team_id, team_name, organization_id, hunt_id, is_active
    teams          PK team_id                      -> team_name, organization_id, hunt_id
                   GSI organization-name-index     (organization_id, team_name)
    organizations  PK organization_id              -> name
    hunts          PK organization_id, SK hunt_id  -> name
    hunt-progress  PK team_id, SK location_id      -> photo_url, done, completed_at, revealed_hints, notes
"""

from __future__ import annotations

import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Mapping, NoReturn, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from hunt_shared import config
from hunt_shared.aws_clients import _get_ddb, _get_s3
from hunt_shared.config import DEPENDENCY_DATABASE, DEPENDENCY_STORAGE, logger
from hunt_shared.retry import classify_aws_error
from hunt_shared.serialization import _deserialize, _now_z, _serialize, _to_item

__all__ = [
    "AssetStore",
    "DynamoProgressStore",
    "DynamoTeamDirectory",
    "HuntLabels",
    "ProgressStore",
    "S3AssetStore",
    "StoredAsset",
    "TeamCodeMapping",
    "TeamDirectory",
    "TeamRecord",
]


@dataclass(frozen=True)
class StoredAsset:
    public_id: str
    url: str


@dataclass(frozen=True)
class TeamCodeMapping:
    team_id: str
    team_name: str
    is_active: bool
    organization_id: str = ""
    hunt_id: str = ""


@dataclass(frozen=True)
class TeamRecord:
    team_id: str
    team_name: str
    organization_id: str = ""
    hunt_id: str = ""


@dataclass(frozen=True)
class HuntLabels:
    organization_name: str
    hunt_name: str


class AssetStore(Protocol):
    def upload(
        self,
        data: bytes,
        public_id: str,
        metadata: Mapping[str, str],
        content_type: str = "application/octet-stream",
    ) -> StoredAsset: ...

    def exists(self, public_id: str) -> bool: ...

    def delete(self, public_id: str) -> None: ...


class TeamDirectory(Protocol):
    def get_team_code_mapping(self, code: str) -> Optional[TeamCodeMapping]: ...

    def get_team(self, team_id: str) -> Optional[TeamRecord]: ...

    def ensure_team(self, mapping: TeamCodeMapping) -> TeamRecord: ...

    def find_team(self, org_id: str, hunt_id: str, team_id_or_name: str) -> Optional[str]: ...

    def describe_hunt(self, org_id: str, hunt_id: str) -> HuntLabels: ...


class ProgressStore(Protocol):
    def upsert_progress(self, team_row_id: str, location_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]: ...


def _raise_classified(exc: Exception, dependency: str) -> NoReturn:
    classified = classify_aws_error(exc, dependency)
    if classified is exc:
        raise exc
    raise classified from exc


# ---------------------------------------------------------------------------
# S3 photo storage
# ---------------------------------------------------------------------------


class S3AssetStore:
    """Photos live at ``<prefix>/<public_id>``; the same public id always maps to the same key."""

    def __init__(
        self,
        bucket: Optional[str] = None,
        prefix: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client=None,
    ) -> None:
        self.bucket = bucket or config.PHOTO_BUCKET
        self.prefix = (prefix if prefix is not None else config.PHOTO_UPLOAD_PREFIX).strip("/")
        self.public_base_url = (public_base_url if public_base_url is not None else config.PHOTO_PUBLIC_BASE_URL).rstrip("/")
        self._client = client

    @property
    def client(self):
        return self._client or _get_s3()

    def key_for(self, public_id: str) -> str:
        return f"{self.prefix}/{public_id}" if self.prefix else public_id

    def url_for(self, public_id: str) -> str:
        key = urllib.parse.quote(self.key_for(public_id))
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{config.S3_REGION}.amazonaws.com/{key}"

    def upload(
        self,
        data: bytes,
        public_id: str,
        metadata: Mapping[str, str],
        content_type: str = "application/octet-stream",
    ) -> StoredAsset:
        # S3 user metadata must be ASCII strings.
        clean_metadata = {
            str(k): str(v).encode("ascii", errors="replace").decode("ascii")
            for k, v in (metadata or {}).items()
            if v not in (None, "")
        }
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=self.key_for(public_id),
                Body=data,
                ContentType=content_type or "application/octet-stream",
                Metadata=clean_metadata,
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_STORAGE)
        return StoredAsset(public_id=public_id, url=self.url_for(public_id))

    def exists(self, public_id: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=self.key_for(public_id))
            return True
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code") or "")
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            _raise_classified(exc, DEPENDENCY_STORAGE)
        except BotoCoreError as exc:
            _raise_classified(exc, DEPENDENCY_STORAGE)
        return False

    def delete(self, public_id: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self.key_for(public_id))
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_STORAGE)


# ---------------------------------------------------------------------------
# Teams and team codes
# ---------------------------------------------------------------------------


class DynamoTeamDirectory:
    def __init__(
        self,
        team_codes_table: Optional[str] = None,
        teams_table: Optional[str] = None,
        teams_gsi: Optional[str] = None,
        client=None,
        organizations_table: Optional[str] = None,
        hunts_table: Optional[str] = None,
    ) -> None:
        self.team_codes_table = team_codes_table or config.TEAM_CODES_TABLE
        self.teams_table = teams_table or config.TEAMS_TABLE
        self.teams_gsi = teams_gsi or config.TEAMS_GSI_NAME
        self.organizations_table = organizations_table or config.ORGANIZATIONS_TABLE
        self.hunts_table = hunts_table or config.HUNTS_TABLE
        self._client = client

    @property
    def client(self):
        return self._client or _get_ddb()

    def get_team_code_mapping(self, code: str) -> Optional[TeamCodeMapping]:
        """Mapping for a normalised team code, or ``None`` when the code is unknown.

        Inactive codes are returned with ``is_active=False``; callers treat them
        as unknown.
        """
        try:
            resp = self.client.get_item(
                TableName=self.team_codes_table,
                Key={"code": _serialize(code)},
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)
        raw = resp.get("Item")
        if not raw:
            return None
        item = _deserialize(raw)
        team_id = str(item.get("team_id") or "")
        team_name = str(item.get("team_name") or "")
        if not team_id or not team_name:
            logger.warning("team code mapping for hashed code is missing team_id/team_name")
            return None
        return TeamCodeMapping(
            team_id=team_id,
            team_name=team_name,
            is_active=bool(item.get("is_active", True)),
            organization_id=str(item.get("organization_id") or ""),
            hunt_id=str(item.get("hunt_id") or ""),
        )

    def get_team(self, team_id: str) -> Optional[TeamRecord]:
        try:
            resp = self.client.get_item(
                TableName=self.teams_table,
                Key={"team_id": _serialize(team_id)},
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)
        raw = resp.get("Item")
        if not raw:
            return None
        return self._team_record(_deserialize(raw))

    def ensure_team(self, mapping: TeamCodeMapping) -> TeamRecord:
        """Return the team row for a mapping, creating it if a code was issued before the team existed."""
        existing = self.get_team(mapping.team_id)
        if existing is not None:
            return existing
        now = _now_z()
        try:
            self.client.put_item(
                TableName=self.teams_table,
                Item=_to_item(
                    {
                        "team_id": mapping.team_id,
                        "team_name": mapping.team_name,
                        "organization_id": mapping.organization_id,
                        "hunt_id": mapping.hunt_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                ),
                ConditionExpression="attribute_not_exists(team_id)",
            )
            logger.info("[INFO] created team row %s from team code mapping", mapping.team_id)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "ConditionalCheckFailedException":
                _raise_classified(exc, DEPENDENCY_DATABASE)
            # A concurrent verification created it first.
        except BotoCoreError as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)
        return TeamRecord(
            team_id=mapping.team_id,
            team_name=mapping.team_name,
            organization_id=mapping.organization_id,
            hunt_id=mapping.hunt_id,
        )

    def find_team(self, org_id: str, hunt_id: str, team_id_or_name: str) -> Optional[str]:
        """Resolve a team id or a team display name to the team row id within an organisation."""
        team = self.get_team(team_id_or_name)
        if team is not None and self._in_scope(team, org_id, hunt_id):
            return team.team_id

        try:
            resp = self.client.query(
                TableName=self.teams_table,
                IndexName=self.teams_gsi,
                KeyConditionExpression="organization_id = :org AND team_name = :name",
                ExpressionAttributeValues={
                    ":org": _serialize(org_id),
                    ":name": _serialize(team_id_or_name),
                },
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)

        for raw in resp.get("Items", []):
            candidate = self._team_record(_deserialize(raw))
            if self._in_scope(candidate, org_id, hunt_id):
                return candidate.team_id
        return None

    def describe_hunt(self, org_id: str, hunt_id: str) -> HuntLabels:
        """Display names for an organisation and hunt; ids stand in for missing rows."""
        org = self._name_of(self.organizations_table, {"organization_id": org_id})
        hunt = self._name_of(self.hunts_table, {"organization_id": org_id, "hunt_id": hunt_id})
        return HuntLabels(organization_name=org or org_id, hunt_name=hunt or hunt_id)

    def _name_of(self, table: str, key: Mapping[str, str]) -> str:
        try:
            resp = self.client.get_item(
                TableName=table,
                Key={name: _serialize(value) for name, value in key.items()},
                ProjectionExpression="#n",
                ExpressionAttributeNames={"#n": "name"},
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)
        return str(_deserialize(resp.get("Item")).get("name") or "")

    @staticmethod
    def _team_record(item: Dict[str, Any]) -> TeamRecord:
        return TeamRecord(
            team_id=str(item.get("team_id") or ""),
            team_name=str(item.get("team_name") or ""),
            organization_id=str(item.get("organization_id") or ""),
            hunt_id=str(item.get("hunt_id") or ""),
        )

    @staticmethod
    def _in_scope(team: TeamRecord, org_id: str, hunt_id: str) -> bool:
        if team.organization_id and org_id and team.organization_id != org_id:
            return False
        if team.hunt_id and hunt_id and team.hunt_id != hunt_id:
            return False
        return True


# ---------------------------------------------------------------------------
# Hunt progress
# ---------------------------------------------------------------------------


class DynamoProgressStore:
    """One row per ``(team_id, location_id)``; writes are last-write-wins upserts."""

    _WRITABLE_FIELDS = ("photo_url", "done", "completed_at")

    def __init__(self, table_name: Optional[str] = None, client=None) -> None:
        self.table_name = table_name or config.HUNT_PROGRESS_TABLE
        self._client = client

    @property
    def client(self):
        return self._client or _get_ddb()

    def upsert_progress(self, team_row_id: str, location_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        now = _now_z()
        set_parts = ["updated_at = :ts", "created_at = if_not_exists(created_at, :ts)"]
        values: Dict[str, Any] = {":ts": _serialize(now), ":zero": _serialize(0)}
        for name in self._WRITABLE_FIELDS:
            if name in fields:
                set_parts.append(f"{name} = :{name}")
                values[f":{name}"] = _serialize(fields[name])
        set_parts.append("revealed_hints = if_not_exists(revealed_hints, :zero)")

        try:
            resp = self.client.update_item(
                TableName=self.table_name,
                Key={"team_id": _serialize(team_row_id), "location_id": _serialize(location_id)},
                UpdateExpression="SET " + ", ".join(set_parts),
                ExpressionAttributeValues=values,
                ReturnValues="ALL_NEW",
            )
        except (BotoCoreError, ClientError) as exc:
            _raise_classified(exc, DEPENDENCY_DATABASE)
        record = _deserialize(resp.get("Attributes") or {})
        logger.info(
            "[INFO] hunt progress upserted team=%s location=%s operation=%s",
            team_row_id,
            location_id,
            "inserted" if record.get("created_at") == record.get("updated_at") else "updated",
        )
        return record
