from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

DEMO_QUESTIONS = [
    ('What is the capital of France?', 'Paris', 'Lyon', 'Marseille', 'A'),
    ('How many continents are there?', 'Five', 'Six', 'Seven', 'C'),
    ('Which planet is known as the Red Planet?', 'Venus', 'Mars', 'Jupiter', 'B'),
    ('What is 12 x 12?', '144', '124', '154', 'A'),
    ('Which gas do plants absorb?', 'Oxygen', 'Nitrogen', 'Carbon dioxide', 'C'),
    ('Who wrote Hamlet?', 'Dickens', 'Shakespeare', 'Austen', 'B'),
    ('What is the largest ocean?', 'Pacific', 'Atlantic', 'Indian', 'A'),
    ('How many sides does a hexagon have?', 'Five', 'Eight', 'Six', 'C'),
]


def create_app(config_class=Config, engine=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from quizrace.errors import QuizRaceError

    @flask_app.errorhandler(QuizRaceError)
    def handle_quizrace_error(exc):
        return jsonify(exc.to_dict()), exc.status_code

    from quizrace.services.rounds import RoundEngine
    from quizrace.socketio_events import SocketIONotifier, register_socketio_handlers

    engine = engine or RoundEngine(flask_app.config)
    engine.events.subscribe(SocketIONotifier())
    flask_app.extensions['quizrace'] = engine

    from quizrace.api.rounds import rounds
    flask_app.register_blueprint(rounds, url_prefix='/api')

    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database with a demo game."""
        from quizrace.models import Game, Question
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            game = Game(name='Demo Race', max_players=10, total_questions=len(DEMO_QUESTIONS), free_questions=2)
            db.session.add(game)
            db.session.flush()
            for position, (text, a, b, c, correct) in enumerate(DEMO_QUESTIONS, start=1):
                db.session.add(Question(
                    game_id=game.id, position=position, text=text,
                    option_a=a, option_b=b, option_c=c, correct_answer=correct,
                ))
            db.session.commit()
            print(f'Database has been reset and seeded! demo game id={game.id}')

    @click.command('sweep')
    def sweep_command():
        """Runs one abandoned-participant and pending-round sweep."""
        from quizrace.services.rounds.sweeper import sweep_once
        with flask_app.app_context():
            result = sweep_once(flask_app)
            print(f"abandoned={result['abandoned']} timed_out={result['timed_out']} "
                  f"rounds_completed={result['rounds_completed']}")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(sweep_command)

    from quizrace.services.rounds.sweeper import schedule_sweeper
    schedule_sweeper(flask_app)

    return flask_app
