"""
Role Resolver — responsible role → concrete user ids on a project.

Team members carry an optional ``workflow_role``; the project manager is
also implied for PROJECT_MANAGER. An empty result is not an error: the
caller routes the alert to the unassigned queue and a
RoleResolutionWarning is logged.
"""

from __future__ import annotations

import logging

from buildtrack.core.exceptions import RoleResolutionWarning
from buildtrack.models.workflow import ResponsibleRole

logger = logging.getLogger(__name__)


class RoleResolver:
    def __init__(self, repo):
        self.repo = repo

    def resolve(self, project, role: str) -> list[int]:
        """Sorted, de-duplicated user ids holding ``role`` on the project.

        ``project`` may be a Project instance or a project id.
        """
        if isinstance(project, int):
            project_id = project
            project = self.repo.get_project(project_id)
        else:
            project_id = project.id

        role = getattr(role, "value", role)
        user_ids = {
            m.user_id
            for m in self.repo.list_team_members(project_id)
            if m.workflow_role == role
        }
        if role == ResponsibleRole.PROJECT_MANAGER.value and project is not None:
            if project.project_manager_id is not None:
                user_ids.add(project.project_manager_id)

        if not user_ids:
            warning = RoleResolutionWarning(project_id, role)
            logger.warning(str(warning), extra={
                "project_id": project_id,
                "event_type": "role_resolution_warning",
            })
        return sorted(user_ids)
