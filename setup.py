from setuptools import find_packages, setup

exec(open('eventdesk/_version.py').read())
if __name__ == '__main__':
    setup(
        name='eventdesk',
        packages=find_packages(include=['eventdesk', 'eventdesk.*']),
        package_data={'eventdesk': ['configspec.ini', 'templates/emails/*.html']},
        version=__version__,
        description='Registration, checkout, badges, check-in and speaker travel for conferences',
        install_requires=[line.strip() for line in open('requirements.txt') if line.strip()],
        extras_require={'test': ['pytest']},
    )
