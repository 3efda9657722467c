"""
Small snapshot documents shared by the test modules.

All of them use a compact grid: 09:00-16:00, lunch 12:00-13:00, 60-minute
periods with no break, Monday to Friday -> 6 periods a day, 30 slots.
"""
from constraints import ConstraintModel
from models import parse_snapshot
from normalizer import normalize
from timeslots import build_slot_grid

WEEKDAYS = ['monday', 'tuesday', 'wednesday', 'thursday', 'friday']


def compact_policy(**general):
    policy = {
        'workingHours': {
            'startTime': '09:00',
            'endTime': '16:00',
            'lunchBreakStart': '12:00',
            'lunchBreakEnd': '13:00',
            'periodDuration': 60,
            'breakDuration': 0,
            'labPeriodDuration': 120,
            'workingDays': list(WEEKDAYS),
            'maxPeriodsPerDay': 6,
        },
        'generalPolicies': {
            'minRoomCapacityBuffer': 10,
            'minBreakBetweenSessions': 0,
        },
        'constraintRules': {},
    }
    policy['generalPolicies'].update(general)
    return policy


def only_available(day, start, end):
    """Availability map open on one day and closed on every other weekday."""
    availability = {d: {'available': False} for d in WEEKDAYS}
    availability[day] = {'available': True, 'startTime': start, 'endTime': end}
    return availability


def teacher(teacher_id, hours=20, teacher_type='core', availability=None, **extra):
    record = {
        'id': teacher_id,
        'name': f"Teacher {teacher_id}",
        'maxHoursPerWeek': hours,
        'teacherType': teacher_type,
    }
    if availability is not None:
        record['availability'] = availability
    record.update(extra)
    return record


def room(room_id, capacity=60, features=('Projector',), room_type='Lecture Hall', **extra):
    record = {'id': room_id, 'name': f"Room {room_id}", 'capacity': capacity,
              'features': list(features), 'type': room_type}
    record.update(extra)
    return record


def division(division_id, students=50, **extra):
    record = {'id': division_id, 'name': f"Division {division_id}", 'studentCount': students}
    record.update(extra)
    return record


def course(course_id, teachers, divisions, theory=None, practical=None, tutorial=None, **extra):
    sessions = {}
    for key, value in (('theory', theory), ('practical', practical), ('tutorial', tutorial)):
        if value is not None:
            sessions[key] = value
    assigned = []
    for i, t in enumerate(teachers):
        if isinstance(t, dict):
            assigned.append(t)
        else:
            assigned.append({'teacherId': t, 'sessionTypes': [k.capitalize() for k in sessions],
                             'isPrimary': i == 0})
    record = {
        'id': course_id,
        'code': course_id.upper(),
        'name': f"Course {course_id}",
        'sessions': sessions,
        'assignedTeachers': assigned,
        'divisionIds': list(divisions),
    }
    record.update(extra)
    return record


def one_course_snapshot():
    """One course, three 60-minute theory sessions, one teacher, one room, one division."""
    return {
        'courses': [course('c1', ['t1'], ['d1'], theory={'sessionsPerWeek': 3, 'duration': 60})],
        'teachers': [teacher('t1')],
        'rooms': [room('r1', capacity=60, features=['Projector'])],
        'divisions': [division('d1', students=50)],
        'policy': compact_policy(),
    }


def monday_hour_snapshot():
    """Same as one_course_snapshot but the teacher is free only Monday 09:00-10:00."""
    snapshot = one_course_snapshot()
    snapshot['teachers'] = [teacher('t1', availability=only_available('monday', '09:00', '10:00'))]
    return snapshot


def latin_square_snapshot():
    """
    Three divisions must each meet three teachers once, and every teacher is
    free only Monday 09:00-12:00: every teacher and every division fills all
    three morning slots.
    """
    teachers = [teacher(t, availability=only_available('monday', '09:00', '12:00')) for t in ('ta', 'tb', 'tc')]
    divisions = [division(d) for d in ('d1', 'd2', 'd3')]
    courses = []
    for d in ('d1', 'd2', 'd3'):
        for t in ('ta', 'tb', 'tc'):
            courses.append(course(f"{d}-{t}", [t], [d], theory={'sessionsPerWeek': 1, 'duration': 60}))
    return {
        'courses': courses,
        'teachers': teachers,
        'rooms': [room(r) for r in ('r1', 'r2', 'r3')],
        'divisions': divisions,
        'policy': compact_policy(),
    }


def overbooked_morning_snapshot():
    """
    The latin square with a fourth division: twelve sessions for nine teacher
    slots. A fifth teacher, free all week, also gives d1 five sessions that
    always fit.
    """
    snapshot = latin_square_snapshot()
    snapshot['divisions'].append(division('d4'))
    for t in ('ta', 'tb', 'tc'):
        snapshot['courses'].append(course(f"d4-{t}", [t], ['d4'], theory={'sessionsPerWeek': 1, 'duration': 60}))
    snapshot['teachers'].append(teacher('tf'))
    snapshot['courses'].append(course('free', ['tf'], ['d1'], theory={'sessionsPerWeek': 5, 'duration': 60}))
    snapshot['rooms'].append(room('r4'))
    return snapshot


def lab_batches_snapshot():
    """One division of 40 in two lab batches; a 2-hour practical runs per batch."""
    return {
        'courses': [
            course('cs-lab', ['t1', 't2'], ['d1'],
                   theory={'sessionsPerWeek': 2, 'duration': 60},
                   practical={'sessionsPerWeek': 1, 'duration': 120, 'requiresLab': True,
                              'requiredFeatures': ['Computers']}),
        ],
        'teachers': [teacher('t1'), teacher('t2')],
        'rooms': [
            room('hall', capacity=60),
            room('lab1', capacity=30, features=['Computers'], room_type='Computer Lab'),
            room('lab2', capacity=30, features=['Computers'], room_type='Computer Lab'),
        ],
        'divisions': [division('d1', students=40, labBatches=2)],
        'policy': compact_policy(),
    }


def build_model(snapshot, weights=None):
    """Parse, normalize and wrap a snapshot document in a ConstraintModel."""
    parsed, errors = parse_snapshot(snapshot)
    grid = build_slot_grid(parsed.policy.working_hours)
    data = normalize(parsed, grid)
    data.errors = errors + data.errors
    return ConstraintModel(grid, data, parsed.policy, weights)
