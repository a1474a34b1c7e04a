from datetime import datetime

from extensions import db


class School(db.Model):
    __tablename__ = 'schools'

    id = db.Column(db.Integer, primary_key=True)
    school_code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(100))
    pincode = db.Column(db.String(20))
    phone = db.Column(db.String(20))
    email = db.Column(db.String(150))
    website = db.Column(db.String(255))
    board_type = db.Column(db.String(30), default='CBSE')
    academic_session_start_month = db.Column(db.Integer, default=4)
    grading_system = db.Column(db.String(30), default='PERCENTAGE')
    affiliation_number = db.Column(db.String(100))
    recognition_status = db.Column(db.String(30), default='RECOGNIZED')
    rte_compliance = db.Column(db.Boolean, default=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<School {self.school_code} {self.name}>'


class Branch(db.Model):
    __tablename__ = 'branches'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'branch_code', name='uq_branches_school_code'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    branch_code = db.Column(db.String(50), nullable=False)
    branch_name = db.Column(db.String(200), nullable=False)
    address_line1 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(100))
    pincode = db.Column(db.String(20))
    phone = db.Column(db.String(20))
    is_main_branch = db.Column(db.Boolean, default=False)
    max_students = db.Column(db.Integer, default=1000)
    current_students = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Branch {self.branch_code} school={self.school_id}>'


class SchoolClass(db.Model):
    __tablename__ = 'classes'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'class_name', name='uq_classes_school_name'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    class_name = db.Column(db.String(50), nullable=False)
    class_order = db.Column(db.Integer, default=0)
    # One of PRE_PRIMARY, PRIMARY, MIDDLE, SECONDARY, SENIOR_SECONDARY
    class_category = db.Column(db.String(30), default='PRIMARY')
    subjects = db.Column(db.JSON)
    passing_percentage = db.Column(db.Numeric(5, 2), default=35)
    max_students_per_section = db.Column(db.Integer, default=40)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<SchoolClass {self.class_name} school={self.school_id}>'


class AcademicYear(db.Model):
    __tablename__ = 'academic_years'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'year_name', name='uq_academic_years_school_name'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    year_name = db.Column(db.String(20), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_current = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<AcademicYear {self.year_name} school={self.school_id}>'


class Section(db.Model):
    __tablename__ = 'sections'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'class_id', 'year_id', 'section_name', name='uq_sections_class_year_name'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False)
    year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    section_name = db.Column(db.String(20), nullable=False)
    max_students = db.Column(db.Integer, default=40)
    current_students = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Section {self.section_name} class={self.class_id} year={self.year_id}>'


class FeeStructure(db.Model):
    __tablename__ = 'fee_structures'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'class_id', 'year_id', 'structure_name', name='uq_fee_structures_class_year_name'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id'), nullable=False)
    year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    structure_name = db.Column(db.String(150), nullable=False)
    total_annual_fee = db.Column(db.Numeric(12, 2), nullable=False)
    # Some deployments compute these three as generated columns
    tuition_fee = db.Column(db.Numeric(12, 2))
    development_fee = db.Column(db.Numeric(12, 2))
    other_fees = db.Column(db.Numeric(12, 2))
    fee_components = db.Column(db.JSON)
    installment_plan = db.Column(db.JSON)
    effective_from = db.Column(db.Date)
    effective_to = db.Column(db.Date)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<FeeStructure {self.structure_name} total={self.total_annual_fee}>'


class StaffUser(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=True)
    username = db.Column(db.String(100), nullable=False, unique=True)
    email = db.Column(db.String(150), unique=True)
    phone = db.Column(db.String(20))
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(200), nullable=False)
    role = db.Column(db.String(30), nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<StaffUser {self.username} ({self.role})>'


class Parent(db.Model):
    __tablename__ = 'parents'

    id = db.Column(db.Integer, primary_key=True)
    # First school to register the parent; phone is global across schools
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    full_name = db.Column(db.String(200), nullable=False)
    phone = db.Column(db.String(20), nullable=False, unique=True)
    whatsapp_number = db.Column(db.String(20))
    email = db.Column(db.String(150))
    occupation = db.Column(db.String(100))
    annual_income_range = db.Column(db.String(50))
    education_level = db.Column(db.String(100))
    address_line1 = db.Column(db.String(255))
    address_line2 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(100))
    pincode = db.Column(db.String(20))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Parent {self.full_name} ({self.phone})>'


class Student(db.Model):
    __tablename__ = 'students'
    __table_args__ = (
        db.UniqueConstraint('school_id', 'admission_number', name='uq_students_school_admission'),
    )

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey('schools.id'), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey('branches.id'), nullable=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    admission_number = db.Column(db.String(50), nullable=False)
    full_name = db.Column(db.String(200), nullable=False)
    roll_number = db.Column(db.String(20))
    date_of_birth = db.Column(db.Date)
    gender = db.Column(db.String(1))
    blood_group = db.Column(db.String(5))
    aadhar_number = db.Column(db.String(20))
    admission_date = db.Column(db.Date)
    admission_class = db.Column(db.String(50))
    current_status = db.Column(db.String(20), default='ACTIVE')
    email = db.Column(db.String(150))
    phone = db.Column(db.String(20))
    address_line1 = db.Column(db.String(255))
    city = db.Column(db.String(100))
    state = db.Column(db.String(100))
    pincode = db.Column(db.String(20))
    medical_conditions = db.Column(db.Text)
    emergency_contact_name = db.Column(db.String(200))
    emergency_contact_phone = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Student {self.full_name} ({self.admission_number})>'


class ParentStudentRelationship(db.Model):
    __tablename__ = 'parent_student_relationships'
    __table_args__ = (
        db.UniqueConstraint('parent_id', 'student_id', 'relationship_type', name='uq_relationships_parent_student_type'),
    )

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(db.Integer, db.ForeignKey('parents.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False, index=True)
    relationship_type = db.Column(db.String(20), nullable=False)
    is_primary_contact = db.Column(db.Boolean, default=False)
    is_fee_responsible = db.Column(db.Boolean, default=False)
    is_emergency_contact = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Relationship {self.relationship_type} parent={self.parent_id} student={self.student_id}>'


class StudentEnrollment(db.Model):
    __tablename__ = 'student_enrollments'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'year_id', name='uq_enrollments_student_year'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('sections.id'), nullable=False)
    year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    enrollment_date = db.Column(db.Date)
    roll_number_in_section = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<Enrollment student={self.student_id} year={self.year_id}>'


class StudentFeeAssignment(db.Model):
    __tablename__ = 'student_fee_assignments'
    __table_args__ = (
        db.UniqueConstraint('student_id', 'year_id', name='uq_fee_assignments_student_year'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    fee_structure_id = db.Column(db.Integer, db.ForeignKey('fee_structures.id'), nullable=False)
    year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    total_fee_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    concession_amount = db.Column(db.Numeric(12, 2), default=0)
    concession_reason = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<FeeAssignment student={self.student_id} year={self.year_id}>'


class FeePayment(db.Model):
    __tablename__ = 'fee_payments'
    __table_args__ = (
        db.UniqueConstraint('fee_assignment_id', 'installment_number', name='uq_fee_payments_assignment_installment'),
    )

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    fee_assignment_id = db.Column(db.Integer, db.ForeignKey('student_fee_assignments.id'), nullable=False)
    installment_number = db.Column(db.Integer, nullable=False, default=1)
    amount_due = db.Column(db.Numeric(12, 2), default=0)
    amount_paid = db.Column(db.Numeric(12, 2), default=0)
    balance_amount = db.Column(db.Numeric(12, 2), default=0)
    due_date = db.Column(db.Date)
    payment_date = db.Column(db.Date)
    payment_mode = db.Column(db.String(30))
    transaction_reference = db.Column(db.String(100))
    status = db.Column(db.String(20), default='PENDING')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<FeePayment assignment={self.fee_assignment_id} #{self.installment_number}>'


class TeacherAssignment(db.Model):
    __tablename__ = 'teacher_assignments'
    __table_args__ = (
        db.UniqueConstraint('teacher_id', 'section_id', 'year_id', name='uq_teacher_assignments_teacher_section_year'),
    )

    id = db.Column(db.Integer, primary_key=True)
    teacher_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    section_id = db.Column(db.Integer, db.ForeignKey('sections.id'), nullable=False)
    year_id = db.Column(db.Integer, db.ForeignKey('academic_years.id'), nullable=False)
    is_class_teacher = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<TeacherAssignment teacher={self.teacher_id} section={self.section_id}>'
