import nox

PYTHON_VERSIONS = ["3.12", "3.13"]


def _install(session: nox.Session) -> None:
    """Install the project with test extras into the nox virtualenv."""
    session.install("-e", ".[test]")


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run fast tests across Python versions."""
    _install(session)
    session.run("pytest", "tests", *session.posargs)


@nox.session(python=PYTHON_VERSIONS)
def full(session: nox.Session) -> None:
    """Run full test suite, forking real worker processes."""
    _install(session)
    session.run("pytest", "tests", "--slow", "--cov=keeper", *session.posargs)
