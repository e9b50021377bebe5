from clubtimer import db
from clubtimer.services.timer.state import (
    ControllerInfo,
    Session,
    SessionConfig,
    TimerState,
)
import json
import random

# No I, O, 0 or 1: codes get read aloud and typed in by hand
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ23456789'


def generate_session_code(length=6):
    """Generate a unique, short session code."""
    while True:
        code = ''.join(random.choices(CODE_ALPHABET, k=length))
        if not db.session.get(TimerSession, code):
            return code


class TimerSession(db.Model):
    __tablename__ = 'timer_session'
    code = db.Column(db.String(16), primary_key=True)
    title = db.Column(db.String(128), nullable=False, default='')
    config_json = db.Column('config', db.Text, nullable=False, default='{}')
    # Timer state; written only by the authority
    status = db.Column(db.String(16), nullable=False, default='idle')  # idle, armed, running, stopped
    preset_id = db.Column(db.String(64), nullable=True)
    lower_sec = db.Column(db.Integer, nullable=False, default=0)
    mid_sec = db.Column(db.Integer, nullable=False, default=0)
    upper_sec = db.Column(db.Integer, nullable=False, default=0)
    started_at_ms = db.Column(db.BigInteger, nullable=True)
    stopped_at_ms = db.Column(db.BigInteger, nullable=True)
    beeped = db.Column(db.Boolean, nullable=False, default=False)
    beep_count = db.Column(db.Integer, nullable=False, default=0)
    seq = db.Column(db.Integer, nullable=False, default=0)
    # Controller presence
    controller_client_id = db.Column(db.String(64), nullable=True)
    controller_last_seen_at = db.Column(db.BigInteger, nullable=True)
    created_at = db.Column(db.BigInteger, nullable=True)
    updated_at = db.Column(db.BigInteger, nullable=True, index=True)
    commands = db.relationship('TimerCommand', back_populates='session', lazy='dynamic')

    @property
    def config(self) -> SessionConfig:
        try:
            return SessionConfig.from_dict(json.loads(self.config_json or '{}'))
        except (ValueError, KeyError, TypeError):
            return SessionConfig()

    @config.setter
    def config(self, value: SessionConfig) -> None:
        self.config_json = json.dumps(value.to_dict())

    def to_session(self) -> Session:
        return Session(
            id=self.code,
            title=self.title or '',
            config=self.config,
            state=TimerState(
                status=self.status,
                preset_id=self.preset_id,
                lower_sec=self.lower_sec or 0,
                mid_sec=self.mid_sec or 0,
                upper_sec=self.upper_sec or 0,
                started_at_ms=self.started_at_ms,
                stopped_at_ms=self.stopped_at_ms,
                beeped=bool(self.beeped),
                beep_count=self.beep_count or 0,
                seq=self.seq or 0,
            ),
            created_at=self.created_at,
            updated_at=self.updated_at,
            controller=ControllerInfo(
                client_id=self.controller_client_id,
                last_seen_at=self.controller_last_seen_at,
            ),
        )

    def to_dict(self):
        return self.to_session().to_dict()


class TimerCommand(db.Model):
    __tablename__ = 'timer_command'
    id = db.Column(db.String(32), primary_key=True)
    session_code = db.Column(db.String(16), db.ForeignKey('timer_session.code'), nullable=False, index=True)
    type = db.Column(db.String(32), nullable=True)
    payload = db.Column(db.Text, nullable=True)  # JSON, validated only when applied
    sent_at_ms = db.Column(db.BigInteger, nullable=True)
    origin_id = db.Column(db.String(64), nullable=True)
    session = db.relationship('TimerSession', back_populates='commands')

    def to_dict(self):
        try:
            payload = json.loads(self.payload) if self.payload is not None else None
        except ValueError:
            payload = self.payload
        return {
            'id': self.id,
            'type': self.type,
            'payload': payload,
            'sentAtMs': self.sent_at_ms,
            'originId': self.origin_id,
        }
