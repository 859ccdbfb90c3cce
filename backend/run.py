from crowdguess import create_app, socketio
from crowdguess.services.sessions.lifecycle import recover_live_sessions

app = create_app()

if __name__ == '__main__':
    # Sessions left live by a previous process get their timers back (or are closed)
    with app.app_context():
        recover_live_sessions()
    # Use SocketIO server to enable websockets in dev; one process owns the timers
    socketio.run(app, debug=True, use_reloader=False)
