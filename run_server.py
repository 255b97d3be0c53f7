import cherrypy

from eventdesk.models import initialize_db
from eventdesk.server import mount

if __name__ == '__main__':
    initialize_db(modify_tables=True)
    mount()
    cherrypy.engine.start()
    cherrypy.engine.block()
