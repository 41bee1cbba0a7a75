"""
可配置的业务策略。

几处行为在不同版本的实现里互相矛盾，这里不替调用方做选择，
统一收进 ClinicPolicy，由 settings 决定：

  doctor_busy_lock           同一医生同一天是否只允许一个 IN_PROGRESS 的 visit
  reception_notes            前台备注对医生是否可见 / 可编辑
  allow_offline_skip_to_done 线下 visit 能否 QUEUED → DONE 直接跳过
"""

from dataclasses import dataclass
from enum import Enum

from django.conf import settings

from .exceptions import ReceptionNotesForbidden
from .types import Role


class ReceptionNotesPolicy(str, Enum):
    SHARED = 'shared'
    RECEPTION_ONLY = 'reception_only'


@dataclass(frozen=True)
class ClinicPolicy:
    doctor_busy_lock: bool = False
    reception_notes: ReceptionNotesPolicy = ReceptionNotesPolicy.SHARED
    allow_offline_skip_to_done: bool = True

    @classmethod
    def from_settings(cls) -> 'ClinicPolicy':
        return cls(
            doctor_busy_lock=bool(getattr(settings, 'CLINIC_DOCTOR_BUSY_LOCK', False)),
            reception_notes=ReceptionNotesPolicy(
                getattr(settings, 'CLINIC_RECEPTION_NOTES_POLICY', ReceptionNotesPolicy.SHARED.value)
            ),
            allow_offline_skip_to_done=bool(getattr(settings, 'CLINIC_ALLOW_OFFLINE_SKIP', True)),
        )

    def _doctor_restricted(self, role) -> bool:
        return (
            self.reception_notes is ReceptionNotesPolicy.RECEPTION_ONLY
            and role is not None
            and Role(role) is Role.DOCTOR
        )

    def can_view_reception_notes(self, role) -> bool:
        return not self._doctor_restricted(role)

    def assert_can_edit_reception_notes(self, role) -> None:
        """role=None 表示系统内部调用，不做限制。"""
        if self._doctor_restricted(role):
            raise ReceptionNotesForbidden(
                message='Reception notes are editable by reception staff only.',
                detail={'role': Role(role).value, 'policy': self.reception_notes.value},
            )
