from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from datasubset.config import (
    ExportConfig,
    ImplicitRelation,
    PrimaryKeyValue,
    TableConfiguration,
    TableExportConfig,
    TableToIgnore,
    validate_where_clause,
)
from datasubset.constants import DEFAULT_SCHEMA
from datasubset.exceptions import DataSubsetError, InsecureWhereClauseError
from datasubset.logging import get_logger
from datasubset.models import ColumnBinding

logger = get_logger(__name__)

__all__ = [
    "DatabaseConfig",
    "DataSubsetConfig",
    "ConfigFileError",
    "load_config",
]


class ConfigFileError(DataSubsetError):
    """Error loading or parsing configuration file."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config from '{path}': {reason}")


@dataclass
class DatabaseConfig:
    """Database connection configuration."""

    url: str | None = None
    """Database connection URL (can be overridden by CLI)."""

    schemas: list[str] = field(default_factory=list)
    """Schemas to discover; defaults to the schemas of the export roots."""


@dataclass
class DataSubsetConfig:
    """
    Complete configuration loaded from a YAML file.

    Example YAML:
        database:
          url: postgres://localhost/app
          schemas: [public]
        tables_to_export:
          - schema: public
            table: orders
            where: "status = 'shipped'"
        table_configurations:
          - schema: public
            table: comments
            implicit_relations:
              - target_schema: public
                target_table: posts
                column_bindings:
                  - {source: subject_id, target: id}
                where: "subject_type = 'post'"
        tables_to_ignore:
          - {schema: audit, table: log}

    JSON is valid YAML, so the same structure may be written as JSON.
    """

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    tables_to_export: list[TableExportConfig] = field(default_factory=list)
    table_configurations: list[TableConfiguration] = field(default_factory=list)
    tables_to_ignore: list[TableToIgnore] = field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "DataSubsetConfig":
        """
        Load configuration from a YAML file.

        Raises:
            ConfigFileError: If file cannot be read, parsed or validated
        """
        path = Path(path)

        if not path.exists():
            raise ConfigFileError(str(path), "File does not exist")

        if not path.is_file():
            raise ConfigFileError(str(path), "Path is not a file")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigFileError(str(path), f"Invalid YAML: {e}")
        except OSError as e:
            raise ConfigFileError(str(path), f"Cannot read file: {e}")

        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ConfigFileError(str(path), "Config file must contain a YAML mapping (dictionary)")

        try:
            config = cls._from_dict(data)
        except (ValueError, TypeError) as e:
            raise ConfigFileError(str(path), f"Invalid configuration: {e}")
        except InsecureWhereClauseError as e:
            raise ConfigFileError(str(path), str(e))

        errors = config.to_export_config().validate()
        if errors:
            raise ConfigFileError(str(path), "; ".join(errors))

        logger.info(
            "Loaded config file",
            path=str(path),
            export_tables=len(config.tables_to_export),
            table_configurations=len(config.table_configurations),
            ignored_tables=len(config.tables_to_ignore),
        )
        return config

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "DataSubsetConfig":
        """Parse configuration from a dictionary loaded from YAML."""
        database_data = data.get("database", {})
        if not isinstance(database_data, dict):
            raise ValueError("'database' section must be a mapping")

        schemas = database_data.get("schemas", [])
        if not isinstance(schemas, list) or not all(isinstance(s, str) for s in schemas):
            raise ValueError("'database.schemas' must be a list of schema names")

        database = DatabaseConfig(url=database_data.get("url"), schemas=schemas)

        export_data = data.get("tables_to_export", [])
        if not isinstance(export_data, list):
            raise ValueError("'tables_to_export' must be a list")

        tables_to_export = [
            _parse_export_table(entry, i) for i, entry in enumerate(export_data, start=1)
        ]

        configuration_data = data.get("table_configurations", [])
        if not isinstance(configuration_data, list):
            raise ValueError("'table_configurations' must be a list")

        table_configurations = [
            _parse_table_configuration(entry, i)
            for i, entry in enumerate(configuration_data, start=1)
        ]

        ignore_data = data.get("tables_to_ignore", [])
        if not isinstance(ignore_data, list):
            raise ValueError("'tables_to_ignore' must be a list")

        tables_to_ignore = []
        for i, entry in enumerate(ignore_data, start=1):
            if not isinstance(entry, dict):
                raise ValueError(f"Ignored table #{i} must be a mapping")
            tables_to_ignore.append(
                TableToIgnore(
                    schema=str(entry.get("schema", DEFAULT_SCHEMA)),
                    table_name=str(entry.get("table", "")),
                )
            )

        return cls(
            database=database,
            tables_to_export=tables_to_export,
            table_configurations=table_configurations,
            tables_to_ignore=tables_to_ignore,
        )

    def to_export_config(self, database_url: str | None = None) -> ExportConfig:
        """
        Build the ExportConfig for a run.

        Args:
            database_url: Overrides ``database.url`` when given
        """
        return ExportConfig(
            tables_to_export=self.tables_to_export,
            table_configurations=self.table_configurations,
            tables_to_ignore=self.tables_to_ignore,
            schemas=self.database.schemas,
            database_url=database_url or self.database.url,
        )


def _parse_export_table(entry: Any, index: int) -> TableExportConfig:
    if not isinstance(entry, dict):
        raise ValueError(f"Export table #{index} must be a mapping")
    if "table" not in entry:
        raise ValueError(f"Export table #{index}: 'table' is required")

    where_clause = entry.get("where")
    if where_clause is not None and not isinstance(where_clause, str):
        raise ValueError(f"Export table #{index}: 'where' must be a string")
    validate_where_clause(where_clause)

    pk_data = entry.get("primary_key", [])
    if not isinstance(pk_data, list):
        raise ValueError(f"Export table #{index}: 'primary_key' must be a list")

    primary_key_values = []
    for pk_entry in pk_data:
        if not isinstance(pk_entry, dict) or "column" not in pk_entry or "value" not in pk_entry:
            raise ValueError(
                f"Export table #{index}: primary key entries need 'column' and 'value'"
            )
        primary_key_values.append(PrimaryKeyValue(str(pk_entry["column"]), str(pk_entry["value"])))

    return TableExportConfig(
        schema=str(entry.get("schema", DEFAULT_SCHEMA)),
        table_name=str(entry["table"]),
        where_clause=where_clause,
        primary_key_values=primary_key_values,
    )


def _parse_table_configuration(entry: Any, index: int) -> TableConfiguration:
    if not isinstance(entry, dict):
        raise ValueError(f"Table configuration #{index} must be a mapping")
    if "table" not in entry:
        raise ValueError(f"Table configuration #{index}: 'table' is required")

    relations_data = entry.get("implicit_relations", [])
    if not isinstance(relations_data, list):
        raise ValueError(f"Table configuration #{index}: 'implicit_relations' must be a list")

    table_configuration = TableConfiguration(
        table_name=str(entry["table"]),
        schema=str(entry.get("schema", DEFAULT_SCHEMA)),
    )

    for relation_index, relation_data in enumerate(relations_data, start=1):
        label = f"{table_configuration.full_name} relation #{relation_index}"
        if not isinstance(relation_data, dict):
            raise ValueError(f"{label} must be a mapping")

        bindings_data = relation_data.get("column_bindings", [])
        if not isinstance(bindings_data, list):
            raise ValueError(f"{label}: 'column_bindings' must be a list")

        bindings = []
        for binding in bindings_data:
            if not isinstance(binding, dict):
                raise ValueError(f"{label}: column bindings must be mappings")
            bindings.append(
                ColumnBinding(str(binding.get("source", "")), str(binding.get("target", "")))
            )

        where_clause = relation_data.get("where")
        if where_clause is not None and not isinstance(where_clause, str):
            raise ValueError(f"{label}: 'where' must be a string")
        validate_where_clause(where_clause)

        relation = ImplicitRelation(
            target_schema=str(relation_data.get("target_schema", DEFAULT_SCHEMA)),
            target_table=str(relation_data.get("target_table", "")),
            column_bindings=bindings,
            where_clause=where_clause,
        )
        if not table_configuration.add_implicit_relation(relation):
            logger.warning("Duplicate implicit relation ignored", relation=label)

    return table_configuration


def load_config(path: str | Path) -> DataSubsetConfig:
    """
    Load configuration from a YAML file.

    Raises:
        ConfigFileError: If configuration cannot be loaded
    """
    return DataSubsetConfig.from_yaml(path)
