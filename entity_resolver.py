"""Read-only resolution of upload rows against existing reference data.

Each row is resolved tier by tier: Region, then Cluster inside that Region,
then School inside that Cluster, then Student inside that School and grade.
A tier is either matched to an existing id, flagged for creation, or left
unresolved with a reason. Location tiers are never matched loosely; an
ambiguous match is left unresolved rather than guessed.
"""

import os
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Optional

from name_matching import containment_match, normalize_name, split_student_name, student_name_key

TIER_MATCHED = 'matched'
TIER_CREATE = 'create'
TIER_UNRESOLVED = 'unresolved'

REASON_MESSAGES = {
    'missing_region': 'Region is blank.',
    'missing_cluster': 'Location (cluster) is blank.',
    'missing_school': 'School name is blank.',
    'missing_student_name': 'Student name is blank.',
    'unknown_region': 'Region not found and region creation is disabled.',
    'unknown_cluster': 'Location not found in region and cluster creation is disabled.',
    'unknown_school': 'School not found in location and school creation is disabled.',
    'unknown_student': 'Student not found in school and student creation is disabled.',
    'ambiguous_region': 'More than one region has this name.',
    'ambiguous_cluster': 'More than one location in the region has this name.',
    'ambiguous_school': 'More than one school in the location has this name.',
    'ambiguous_student': 'More than one student in the school has this name.',
    'parent_unresolved': 'Parent location could not be resolved.',
}
HINTABLE_REASONS = {'missing_region', 'missing_cluster'}


def _env_flag(environ, name, default):
    raw = (environ.get(name) or '').strip().lower()
    if not raw:
        return default
    return raw in ('1', 'true', 'yes', 'on')


@dataclass
class CreationPolicy:
    """Which tiers the pipeline may provision when no existing match is found."""

    regions: bool = True
    clusters: bool = True
    schools: bool = True
    students: bool = True
    student_fuzzy_match: bool = False

    @classmethod
    def from_env(cls, environ=None):
        environ = os.environ if environ is None else environ
        return cls(
            regions=_env_flag(environ, 'AUTO_CREATE_REGIONS', True),
            clusters=_env_flag(environ, 'AUTO_CREATE_CLUSTERS', True),
            schools=_env_flag(environ, 'AUTO_CREATE_SCHOOLS', True),
            students=_env_flag(environ, 'AUTO_CREATE_STUDENTS', True),
            student_fuzzy_match=_env_flag(environ, 'STUDENT_FUZZY_MATCH', False),
        )

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        return cls(**(data or {}))


@dataclass
class TierResolution:
    status: str
    id: Optional[int] = None
    key: str = ''
    fields: dict = field(default_factory=dict)
    reason: str = ''

    @property
    def matched(self):
        return self.status == TIER_MATCHED

    @property
    def to_create(self):
        return self.status == TIER_CREATE

    @property
    def unresolved(self):
        return self.status == TIER_UNRESOLVED

    @property
    def message(self):
        if self.unresolved:
            return REASON_MESSAGES.get(self.reason, self.reason)
        if self.to_create:
            return 'Will be created on confirm.'
        return ''

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        return cls(**data)


def matched(record_id):
    return TierResolution(status=TIER_MATCHED, id=int(record_id), key=f'id:{record_id}')


def to_create(key, **fields):
    return TierResolution(status=TIER_CREATE, key=f'new:{key}', fields=fields)


def unresolved(reason):
    return TierResolution(status=TIER_UNRESOLVED, reason=reason)


@dataclass
class RowResolution:
    region: TierResolution
    cluster: TierResolution
    school: TierResolution
    student: TierResolution
    # Set by the resolver from the raw cells; see EntityResolver.is_hintable.
    hintable: bool = False

    @property
    def location_resolved(self):
        return not (self.region.unresolved or self.cluster.unresolved or self.school.unresolved)

    @property
    def resolved(self):
        return self.location_resolved and not self.student.unresolved

    def tiers(self):
        return (('region', self.region), ('cluster', self.cluster), ('school', self.school), ('student', self.student))

    def to_dict(self):
        data = {name: tier.to_dict() for name, tier in self.tiers()}
        data['hintable'] = self.hintable
        return data

    @classmethod
    def from_dict(cls, data):
        tiers = {name: TierResolution.from_dict(data[name]) for name in ('region', 'cluster', 'school', 'student')}
        return cls(hintable=bool(data.get('hintable')), **tiers)


class ReferenceIndex:
    """Lookup tables over a ``ReferenceSnapshot`` keyed by normalized names."""

    def __init__(self, snapshot, grade):
        self.regions = defaultdict(list)
        for region in snapshot.regions:
            self.regions[normalize_name(region['name'])].append(region)
        self.clusters = defaultdict(list)
        for cluster in snapshot.clusters:
            self.clusters[(cluster['region_id'], normalize_name(cluster['name']))].append(cluster)
        self.schools = defaultdict(list)
        for school in snapshot.schools:
            if school.get('cluster_id') is None:
                continue
            self.schools[(school['cluster_id'], normalize_name(school['name']))].append(school)
        self.students = defaultdict(list)
        for student in snapshot.students:
            if int(student.get('grade') or 0) != int(grade):
                continue
            key = student_name_key(student.get('first_name'), student.get('last_name'))
            self.students[student['school_id']].append((key, student))


class EntityResolver:
    def __init__(self, index, policy=None):
        self.index = index
        self.policy = policy or CreationPolicy()

    @staticmethod
    def _pick(candidates, label):
        if len(candidates) == 1:
            return matched(candidates[0]['id'])
        return unresolved(f'ambiguous_{label}')

    def resolve_region(self, name):
        key = normalize_name(name)
        if not key:
            return unresolved('missing_region')
        candidates = self.index.regions.get(key, [])
        if candidates:
            return self._pick(candidates, 'region')
        if self.policy.regions:
            return to_create(key, name=name)
        return unresolved('unknown_region')

    def resolve_cluster(self, region, name):
        if region.unresolved:
            return unresolved('parent_unresolved')
        key = normalize_name(name)
        if not key:
            return unresolved('missing_cluster')
        if region.matched:
            candidates = self.index.clusters.get((region.id, key), [])
            if candidates:
                return self._pick(candidates, 'cluster')
        if self.policy.clusters:
            return to_create(f'{region.key}/{key}', name=name, region_id=region.id)
        return unresolved('unknown_cluster')

    def resolve_school(self, cluster, name, code='', address=''):
        if cluster.unresolved:
            return unresolved('parent_unresolved')
        key = normalize_name(name)
        if not key:
            return unresolved('missing_school')
        if cluster.matched:
            candidates = self.index.schools.get((cluster.id, key), [])
            if candidates:
                return self._pick(candidates, 'school')
        if self.policy.schools:
            return to_create(f'{cluster.key}/{key}', name=name, code=code, address=address)
        return unresolved('unknown_school')

    def resolve_student(self, school, full_name, index_number=''):
        if school.unresolved:
            return unresolved('parent_unresolved')
        first_name, last_name = split_student_name(full_name)
        key = student_name_key(first_name, last_name)
        if not key:
            return unresolved('missing_student_name')
        if school.matched:
            roster = self.index.students.get(school.id, [])
            exact = [student for student_key, student in roster if student_key == key]
            if exact:
                return self._pick(exact, 'student')
            if self.policy.student_fuzzy_match:
                loose = [student for student_key, student in roster if containment_match(key, student_key)]
                if loose:
                    return self._pick(loose, 'student')
        if self.policy.students:
            return to_create(
                f'{school.key}/{key}',
                first_name=first_name,
                last_name=last_name,
                index_number=index_number,
            )
        return unresolved('unknown_student')

    @staticmethod
    def is_hintable(row, resolution):
        """True when only blank Region and/or Location cells stand in the way.

        Tiers below a blank cell report ``parent_unresolved`` and never see
        their own cell, so the School Name and Student Name cells are checked
        directly.
        """
        if not normalize_name(row.school_name):
            return False
        if not student_name_key(*split_student_name(row.student_name)):
            return False
        reasons = {tier.reason for _name, tier in resolution.tiers() if tier.unresolved}
        return bool(reasons & HINTABLE_REASONS) and reasons <= HINTABLE_REASONS | {'parent_unresolved'}

    def resolve(self, row):
        region = self.resolve_region(row.region_name)
        cluster = self.resolve_cluster(region, row.cluster_name)
        school = self.resolve_school(cluster, row.school_name, code=row.school_code, address=row.cluster_name)
        student = self.resolve_student(school, row.student_name, index_number=row.student_number)
        resolution = RowResolution(region=region, cluster=cluster, school=school, student=student)
        resolution.hintable = self.is_hintable(row, resolution)
        return resolution
