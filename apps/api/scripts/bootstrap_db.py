"""Create database schema and seed console users and a sample lead for development."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from callrelay.core.security import issue_token
from callrelay.db.session import SessionLocal, engine
from callrelay.models.base import Base
from callrelay.models.lead import Lead, LeadStatus
from callrelay.models.user import AgentStatus, User

USERS = [
	{
		"id": "user-admin",
		"email": "admin@example.com",
		"first_name": "Ada",
		"last_name": "Admin",
		"role": "admin",
	},
	{
		"id": "user-supervisor",
		"email": "supervisor@example.com",
		"first_name": "Sam",
		"last_name": "Supervisor",
		"role": "supervisor",
	},
	{
		"id": "user-agent",
		"email": "agent@example.com",
		"first_name": "Alex",
		"last_name": "Agent",
		"role": "agent",
	},
]


LEADS = [
	{
		"id": "lead-jordan",
		"first_name": "Jordan",
		"last_name": "Reyes",
		"phone": "+15551234567",
		"campaign_id": "campaign-spring",
	},
]


async def create_schema() -> None:
	"""Create the database schema if it does not already exist."""

	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)


async def seed_users() -> None:
	"""Insert or refresh the demo console accounts."""

	async with SessionLocal() as session:
		async with session.begin():
			for user_data in USERS:
				user = await session.get(User, user_data["id"])
				if user is None:
					user = User(
						id=user_data["id"],
						email=user_data["email"],
						first_name=user_data["first_name"],
						last_name=user_data["last_name"],
						role=user_data["role"],
						status=AgentStatus.OFFLINE,
						status_changed_at=datetime.now(timezone.utc),
					)
					session.add(user)
				else:
					user.email = user_data["email"]
					user.first_name = user_data["first_name"]
					user.last_name = user_data["last_name"]
					user.role = user_data["role"]
					session.add(user)


async def seed_leads() -> None:
	"""Insert demo leads for development flows."""

	async with SessionLocal() as session:
		async with session.begin():
			for lead_data in LEADS:
				lead = await session.get(Lead, lead_data["id"])
				if lead is None:
					lead = Lead(
						id=lead_data["id"],
						first_name=lead_data["first_name"],
						last_name=lead_data["last_name"],
						phone=lead_data["phone"],
						campaign_id=lead_data["campaign_id"],
						status=LeadStatus.NEW,
						attempts=0,
						created_at=datetime.now(timezone.utc),
					)
					session.add(lead)
				else:
					lead.first_name = lead_data["first_name"]
					lead.last_name = lead_data["last_name"]
					lead.phone = lead_data["phone"]
					lead.campaign_id = lead_data["campaign_id"]
					session.add(lead)


async def main() -> None:
	await create_schema()
	await seed_users()
	await seed_leads()
	print("Database schema ensured and demo data seeded.")
	for user_data in USERS:
		print(f"{user_data['role']:<10} {issue_token(user_data['id'], user_data['role'])}")


if __name__ == "__main__":
	asyncio.run(main())
