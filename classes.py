"""Class directory: role-filtered class listings and roster maintenance."""
import logging
from typing import Dict, List, Optional

from database import DocumentStore, new_id, to_public
from errors import NotFoundError, ValidationError
from schemas import Class, Subgroup, User
from session import lookup_users

logger = logging.getLogger(__name__)

BY_NAME = [("name", 1), ("_id", 1)]
CLASS_FIELDS = ("name", "schedule", "description", "instructor_id")


class ClassDirectory:
    def __init__(self, store: DocumentStore):
        self.store = store

    def list_for_role(self, user: User) -> List[Class]:
        if user.role == "student":
            query = {"enrolled_students": user.id}
        elif user.role == "professor":
            query = {"instructor_id": user.id}
        else:
            logger.warning("Unrecognised role %r for %s, listing every class", user.role, user.id)
            query = {}
        return [Class(**to_public(d)) for d in self.store.get_documents("classes", query, sort=BY_NAME)]

    def get_class(self, class_id: str) -> Optional[Class]:
        doc = self.store.get_document("classes", class_id)
        return Class(**to_public(doc)) if doc else None

    def _require(self, class_id: str) -> Class:
        found = self.get_class(class_id)
        if found is None:
            raise NotFoundError("Class not found")
        return found

    def roster(self, class_id: str) -> Dict[str, object]:
        """Instructor and students with display info; dangling ids render as unknown."""
        found = self._require(class_id)
        info = lookup_users(self.store, [found.instructor_id, *found.enrolled_students])
        return {
            "instructor": info[found.instructor_id],
            "students": [info[sid] for sid in found.enrolled_students],
        }

    def create_class(self, name: str, instructor_id: str, schedule: str,
                     description: Optional[str] = None, enrolled_students: Optional[List[str]] = None,
                     class_id: Optional[str] = None) -> Class:
        if not name.strip() or not instructor_id:
            raise ValidationError("Class name and instructor are required")
        cid = self.store.create_document("classes", {
            "name": name,
            "instructor_id": instructor_id,
            "schedule": schedule,
            "description": description,
            "enrolled_students": list(enrolled_students or []),
            "subgroups": [],
        }, doc_id=class_id)
        return self._require(cid)

    def update_class(self, class_id: str, **changes) -> Class:
        unknown = set(changes) - set(CLASS_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update class fields: {', '.join(sorted(unknown))}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Class name is required")
        if not self.store.update_document("classes", class_id, changes):
            raise NotFoundError("Class not found")
        return self._require(class_id)

    def delete_class(self, class_id: str):
        if not self.store.delete_document("classes", class_id):
            raise NotFoundError("Class not found")
        logger.info("Deleted class %s", class_id)

    def enroll_student(self, class_id: str, student_id: str) -> Class:
        if not self.store.update_document("classes", class_id, add_to_set={"enrolled_students": student_id}):
            raise NotFoundError("Class not found")
        return self._require(class_id)

    def remove_student(self, class_id: str, student_id: str) -> Class:
        if not self.store.update_document("classes", class_id, pull={"enrolled_students": student_id}):
            raise NotFoundError("Class not found")
        return self._require(class_id)

    def create_subgroup(self, class_id: str, name: str, members: Optional[List[str]] = None,
                        due_date: Optional[str] = None, color: str = "bg-blue-500") -> Subgroup:
        found = self._require(class_id)
        subgroup = Subgroup(
            id=f"{class_id}_sg_{new_id()}",
            name=name,
            class_id=class_id,
            members=list(members or []),
            due_date=due_date,
            color=color,
        )
        subgroups = [sg.model_dump() for sg in found.subgroups] + [subgroup.model_dump()]
        self.store.update_document("classes", class_id, {"subgroups": subgroups})
        return subgroup

    def update_subgroup(self, class_id: str, subgroup_id: str, **changes) -> Subgroup:
        found = self._require(class_id)
        changes.pop("id", None)
        changes.pop("class_id", None)
        updated = None
        subgroups = []
        for sg in found.subgroups:
            if sg.id == subgroup_id:
                sg = sg.model_copy(update=changes)
                updated = sg
            subgroups.append(sg.model_dump())
        if updated is None:
            raise NotFoundError("Subgroup not found")
        self.store.update_document("classes", class_id, {"subgroups": subgroups})
        return updated
