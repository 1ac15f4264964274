import asyncio

from models import DocumentStatus, RequirementStatus, Theme
from conftest import as_json, upload


class TestProjectFlow:
    def test_upload_extract_generate_delete(self, project, fake):
        fake.extract_results["login.txt"] = as_json([
            {"id": "REQ-1", "text": "Users can log in"},
            {"id": "REQ-2", "text": "Users can log out"},
        ])
        fake.extract_results["billing.txt"] = as_json([{"id": "REQ-3", "text": "Invoices are emailed"}])

        async def scenario():
            login, billing = project.add_documents([upload("login.txt"), upload("billing.txt")])
            await project.drain()
            fake.generate_results.append(as_json([
                {"title": "Login", "requirementId": "REQ-1", "steps": "s", "expectedResult": "e"},
                {"title": "Invoice", "requirementId": "REQ-3", "steps": "s", "expectedResult": "e"},
            ]))
            await project.generate_test_cases(["REQ-1", "REQ-3"])
            return login, billing

        login, billing = asyncio.run(scenario())
        assert {d.status for d in project.store.get("documents")} == {DocumentStatus.SUCCESS}
        assert project.kpis().overall_coverage == 67

        res = project.delete_document(login.id)

        assert res.requirement_ids == {"REQ-1", "REQ-2"}
        assert len(res.test_case_ids) == 1
        assert [r.id for r in project.store.get("requirements")] == ["REQ-3"]
        assert [tc.requirement_id for tc in project.store.get("test_cases")] == ["REQ-3"]
        assert project.store.find("requirements", "REQ-3").status is RequirementStatus.MAPPED
        assert project.kpis().overall_coverage == 100

    def test_search_log_and_theme(self, project):
        project.add_recent_search("Login")
        project.add_recent_search("login")
        assert [q.query for q in project.recent_queries.entries()] == ["login"]

        assert project.theme() is Theme.DARK
        assert project.toggle_theme() is Theme.LIGHT
        assert project.theme() is Theme.LIGHT
