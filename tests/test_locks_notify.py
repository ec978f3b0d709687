import sys
import threading
from pathlib import Path

import pytest
from psycopg_pool import PoolTimeout

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import notify  # noqa: E402
from locks import LockTimeout, PgAdvisoryLock, ThreadLock, lock_key  # noqa: E402
from notify import SmtpMailSender, build_result_email, deliver_notice  # noqa: E402
from quiz_store import QuestionRow  # noqa: E402
from submission import ResultNotice, SubmissionProcessor  # noqa: E402


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------
def test_thread_lock_times_out_while_held_elsewhere():
    lock = ThreadLock()
    lock.acquire(1000)
    errors = []

    def contender():
        try:
            lock.acquire(50)
        except LockTimeout as e:
            errors.append(e)
        finally:
            lock.release()  # not the owner: must be a no-op

    t = threading.Thread(target=contender)
    t.start()
    t.join()
    assert len(errors) == 1

    # the contender's release left our hold intact
    second = []
    t = threading.Thread(target=lambda: second.append(_try(lock)))
    t.start()
    t.join()
    assert isinstance(second[0], LockTimeout)

    lock.release()
    lock.release()
    lock.acquire(10)
    lock.release()


def _try(lock):
    try:
        lock.acquire(10)
    except LockTimeout as e:
        return e
    return None


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row


class FakeConn:
    def __init__(self, free_after=0):
        self.statements = []
        self.commits = 0
        self._tries_left = free_after

    def execute(self, sql, params=()):
        self.statements.append((sql, params))
        if "pg_try_advisory_lock" in sql:
            ok = self._tries_left <= 0
            self._tries_left -= 1
            return FakeCursor({"ok": ok})
        return FakeCursor({})

    def commit(self):
        self.commits += 1


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.out = 0

    def getconn(self, timeout=None):
        self.out += 1
        return self.conn

    def putconn(self, conn):
        self.out -= 1


def test_advisory_lock_holds_connection_until_release():
    conn = FakeConn(free_after=2)
    pool = FakePool(conn)
    lock = PgAdvisoryLock(lambda: pool, poll_interval=0.001)

    lock.acquire(1000)
    assert pool.out == 1
    tries = [s for s, _ in conn.statements if "pg_try_advisory_lock" in s]
    assert len(tries) == 3

    lock.release()
    assert pool.out == 0
    assert "pg_advisory_unlock" in conn.statements[-1][0]
    assert conn.statements[-1][1] == (lock_key("quiz-submissions"),)

    lock.release()
    assert pool.out == 0


def test_advisory_lock_timeout_returns_connection():
    conn = FakeConn(free_after=10_000)
    pool = FakePool(conn)
    lock = PgAdvisoryLock(lambda: pool, poll_interval=0.001)
    with pytest.raises(LockTimeout):
        lock.acquire(20)
    assert pool.out == 0
    lock.release()
    assert not any("pg_advisory_unlock" in s for s, _ in conn.statements)


class AdvisoryServer:
    """Advisory lock table shared by every session, as on the database side."""

    def __init__(self):
        self.mutex = threading.Lock()
        self.holder = None


class SessionConn:
    def __init__(self, server):
        self.server = server

    def execute(self, sql, params=()):
        with self.server.mutex:
            if "pg_try_advisory_lock" in sql:
                if self.server.holder in (None, self):
                    self.server.holder = self
                    return FakeCursor({"ok": True})
                return FakeCursor({"ok": False})
            if "pg_advisory_unlock" in sql and self.server.holder is self:
                self.server.holder = None
        return FakeCursor({})

    def commit(self):
        pass


class BoundedPool:
    """getconn blocks up to its timeout once every slot is checked out."""

    def __init__(self, server, size):
        self._slots = threading.Semaphore(size)
        self._mutex = threading.Lock()
        self._idle = [SessionConn(server) for _ in range(size)]

    def getconn(self, timeout=None):
        if not self._slots.acquire(timeout=timeout):
            raise PoolTimeout("couldn't get a connection")
        with self._mutex:
            return self._idle.pop()

    def putconn(self, conn):
        with self._mutex:
            self._idle.append(conn)
        self._slots.release()


class StaticQuestions:
    def __init__(self, rows):
        self.rows = rows

    def read_all(self):
        return list(self.rows)


class PooledResultStore:
    """Checks a connection out of the shared pool for every call, like main.get_conn()."""

    def __init__(self, pool):
        self.pool = pool
        self.records = []

    def _borrow(self):
        conn = self.pool.getconn(timeout=0.5)
        self.pool.putconn(conn)

    def ensure_headers(self):
        self._borrow()

    def email_column(self):
        self._borrow()
        return [(r.submitted_at, r.email) for r in self.records]

    def append(self, record):
        self._borrow()
        self.records.append(record)


def test_advisory_waiter_returns_connection_between_polls():
    server = AdvisoryServer()
    pool = BoundedPool(server, size=2)
    lock = PgAdvisoryLock(lambda: pool, poll_interval=0.01)
    lock.acquire(1000)

    waited = []

    def wait_for_lock():
        lock.acquire(2000)
        waited.append(True)
        lock.release()

    waiter = threading.Thread(target=wait_for_lock)
    waiter.start()
    try:
        # the holder can still reach the pool while the waiter polls
        for _ in range(5):
            conn = pool.getconn(timeout=0.5)
            pool.putconn(conn)
    finally:
        lock.release()
    waiter.join()

    assert waited == [True]
    assert server.holder is None


def test_concurrent_submissions_share_a_small_pool_with_the_lock():
    server = AdvisoryServer()
    pool = BoundedPool(server, size=2)
    results = PooledResultStore(pool)
    rows = [QuestionRow.from_cells([1, "What is 2+2?", "3", "4", "5", "", "", "B"])]
    proc = SubmissionProcessor(
        question_store=StaticQuestions(rows),
        result_store=results,
        lock=PgAdvisoryLock(lambda: pool, poll_interval=0.01),
        email_domain="fdbbank.com",
        lock_timeout_ms=1000,
    )
    start = threading.Barrier(2)
    outcomes = {}

    def submit(name):
        start.wait()
        outcomes[name] = proc.process({
            "email": f"{name}@fdbbank.com",
            "answers": [{"question": "What is 2+2?", "answer": "B"}],
        })

    threads = [threading.Thread(target=submit, args=(n,)) for n in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert {n: o.status for n, o in outcomes.items()} == {"a": "success", "b": "success"}
    assert sorted(r.email for r in results.records) == ["a@fdbbank.com", "b@fdbbank.com"]
    assert server.holder is None


def test_lock_key_is_stable_signed_int32():
    k = lock_key("quiz-submissions")
    assert k == lock_key("quiz-submissions")
    assert -(1 << 31) <= k < (1 << 31)


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------
def test_result_email_wording():
    subject, body = build_result_email("user@fdbbank.com", 12, "Pass")
    assert subject == "🎉 Congratulations! You Passed"
    assert body.startswith("Hi user@fdbbank.com,\n\n")
    assert "Your score: 12" in body
    assert body.endswith("See you next time!")

    subject, body = build_result_email("user@fdbbank.com", 4, "Fail")
    assert subject == "😢 Sorry, You Didn't Pass"
    assert "didn't pass the quiz this time" in body


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.logged_in = None
        self.messages = []
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def ehlo(self):
        pass

    def has_extn(self, name):
        return name == "starttls"

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def send_message(self, msg):
        self.messages.append(msg)


def test_smtp_sender_builds_message(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(notify.smtplib, "SMTP", FakeSMTP)
    sender = SmtpMailSender(host="smtp.example.com", port=587, user="u", password="p",
                            from_addr="quiz@fdbbank.com", use_ssl=False)
    assert sender.send("user@fdbbank.com", "Subject", "Hi <you>\n\nbody",
                       sender_name="FDB Quick System", reply_to="help@fdbbank.com") is True

    smtp = FakeSMTP.instances[0]
    assert smtp.tls is True
    assert smtp.logged_in == ("u", "p")
    msg = smtp.messages[0]
    assert msg["From"] == "FDB Quick System <quiz@fdbbank.com>"
    assert msg["Reply-To"] == "help@fdbbank.com"
    html = msg.get_body(preferencelist=("html",)).get_content()
    assert "&lt;you&gt;" in html


def test_smtp_sender_disabled_without_host():
    assert SmtpMailSender(host="", from_addr="").send("a@b.c", "s", "b") is False


def test_deliver_notice_swallows_failures():
    class Boom:
        def send(self, *args, **kwargs):
            raise OSError("connection refused")

    notice = ResultNotice(email="user@fdbbank.com", score=10, result="Pass")
    assert deliver_notice(notice, Boom()) is False
    assert deliver_notice(None, Boom()) is False
