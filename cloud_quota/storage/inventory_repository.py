"""
Inventory lookups.

Accounts, domains, zones and resources are owned by the rest of the cloud
platform; the quota subsystem keeps a copy of what it needs to describe a
usage entry to activation rules.
"""

import json
from typing import Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import Account, Domain, Resource, Zone


class InventoryRepository:
    """Read and upsert the inventory rows used to build preset variables."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _fetch_one(self, query: str, params: tuple) -> Optional[tuple]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchone()
        finally:
            conn.close()

    def _write(self, query: str, params: tuple) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(query, params)
            conn.commit()
        finally:
            conn.close()

    def get_account(self, account_id: int) -> Optional[Account]:
        row = self._fetch_one("""
            SELECT id, uuid, name, domain_id, role_uuid, role_name, role_type, project_uuid, project_name
            FROM account WHERE id = ?
        """, (account_id,))
        return Account(*row) if row else None

    def get_domain(self, domain_id: int) -> Optional[Domain]:
        row = self._fetch_one("SELECT id, uuid, name, path FROM domain WHERE id = ?", (domain_id,))
        return Domain(*row) if row else None

    def get_zone(self, zone_id: int) -> Optional[Zone]:
        row = self._fetch_one("SELECT id, uuid, name FROM zone WHERE id = ?", (zone_id,))
        return Zone(*row) if row else None

    def get_resource(self, resource_id: int, usage_type: int) -> Optional[Resource]:
        row = self._fetch_one("""
            SELECT id, usage_type, uuid, name, os_name, tags, virtual_size, offering_uuid,
                   offering_name, offering_customized, cpu_number, cpu_speed, memory
            FROM resource WHERE id = ? AND usage_type = ?
        """, (resource_id, usage_type))
        if row is None:
            return None
        return Resource(
            id=row[0],
            usage_type=row[1],
            uuid=row[2],
            name=row[3],
            os_name=row[4],
            tags=json.loads(row[5]),
            virtual_size=row[6],
            offering_uuid=row[7],
            offering_name=row[8],
            offering_customized=None if row[9] is None else bool(row[9]),
            cpu_number=row[10],
            cpu_speed=row[11],
            memory=row[12]
        )

    def save_account(self, account: Account) -> None:
        self._write("""
            INSERT OR REPLACE INTO account
            (id, uuid, name, domain_id, role_uuid, role_name, role_type, project_uuid, project_name)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            account.id, account.uuid, account.name, account.domain_id, account.role_uuid,
            account.role_name, account.role_type, account.project_uuid, account.project_name
        ))

    def save_domain(self, domain: Domain) -> None:
        self._write(
            "INSERT OR REPLACE INTO domain (id, uuid, name, path) VALUES (?, ?, ?, ?)",
            (domain.id, domain.uuid, domain.name, domain.path)
        )

    def save_zone(self, zone: Zone) -> None:
        self._write(
            "INSERT OR REPLACE INTO zone (id, uuid, name) VALUES (?, ?, ?)",
            (zone.id, zone.uuid, zone.name)
        )

    def save_resource(self, resource: Resource) -> None:
        self._write("""
            INSERT OR REPLACE INTO resource
            (id, usage_type, uuid, name, os_name, tags, virtual_size, offering_uuid,
             offering_name, offering_customized, cpu_number, cpu_speed, memory)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            resource.id,
            resource.usage_type,
            resource.uuid,
            resource.name,
            resource.os_name,
            json.dumps(resource.tags),
            resource.virtual_size,
            resource.offering_uuid,
            resource.offering_name,
            None if resource.offering_customized is None else int(resource.offering_customized),
            resource.cpu_number,
            resource.cpu_speed,
            resource.memory
        ))
